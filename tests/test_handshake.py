import pytest
import requests

from scripts import dgut_daka
from scripts.dgut_daka import (
    AuthenticationError,
    Credentials,
    ProtocolError,
    RedirectChain,
    TransportError,
)
from tests.fakes import (
    CHECK_URL,
    CLIENT_ID,
    EXECUTION,
    HOP1_URL,
    HOP2_URL,
    HOP3_URL,
    LOGIN_PAGE_URL,
    SALT,
    FakeSession,
    handshake_session,
    make_response,
    redirect,
)

CREDENTIALS = Credentials(username="201941000000", password="P@ssw0rd")


def replace_route(session, method, url, *responses):
    session.routes.pop((method, url), None)
    session.add(method, url, *responses)


def test_discovery_takes_client_id_from_bootstrap_url():
    info = dgut_daka.discover_login(handshake_session(), timeout=5)

    assert info.client_id == CLIENT_ID
    assert info.login_url == LOGIN_PAGE_URL


def test_authorize_url_carries_fixed_redirect_and_state():
    url = dgut_daka.build_authorize_url("xyz")

    assert url == (
        "https://auth.dgut.edu.cn/authserver/oauth2.0/authorize?response_type=code"
        "&client_id=xyz&redirect_uri=https://yqfk-daka.dgut.edu.cn/new_login/dgut&state=yqfk"
    )


@pytest.mark.parametrize(
    "body",
    [
        {"data": {}},
        {"data": "oops"},
        {"message": "ok"},
        {"data": {"url": "https://auth.dgut.edu.cn/authserver/oauth2.0/authorize?state=yqfk"}},
    ],
)
def test_discovery_rejects_unexpected_bootstrap_shape(body):
    session = handshake_session()
    replace_route(
        session,
        "GET",
        dgut_daka.BOOTSTRAP_URL,
        make_response(200, dgut_daka.BOOTSTRAP_URL, json_body=body),
    )

    with pytest.raises(ProtocolError):
        dgut_daka.discover_login(session, timeout=5)


def test_discovery_rejects_non_json_bootstrap():
    session = handshake_session()
    replace_route(
        session,
        "GET",
        dgut_daka.BOOTSTRAP_URL,
        make_response(502, dgut_daka.BOOTSTRAP_URL, "<html>Bad Gateway</html>"),
    )

    with pytest.raises(ProtocolError) as excinfo:
        dgut_daka.discover_login(session, timeout=5)
    assert excinfo.value.status == 502


def test_discovery_requires_location_on_authorize():
    session = handshake_session()
    authorize = dgut_daka.build_authorize_url(CLIENT_ID)
    replace_route(session, "GET", authorize, make_response(200, authorize, "<html></html>"))

    with pytest.raises(ProtocolError):
        dgut_daka.discover_login(session, timeout=5)


def test_login_page_scrape_reads_salt_and_execution():
    page = dgut_daka.fetch_login_page(handshake_session(), LOGIN_PAGE_URL, timeout=5)

    assert page.salt == SALT
    assert page.execution == EXECUTION


def test_login_page_without_execution_is_a_protocol_error():
    session = FakeSession().add(
        "GET",
        LOGIN_PAGE_URL,
        make_response(200, LOGIN_PAGE_URL, '<input id="pwdEncryptSalt" value="x">'),
    )

    with pytest.raises(ProtocolError):
        dgut_daka.fetch_login_page(session, LOGIN_PAGE_URL, timeout=5)


def test_salt_with_bad_key_length_aborts_before_login_post():
    session = handshake_session()
    html = '<input id="pwdEncryptSalt" value="short"><input id="execution" value="e1s1">'
    replace_route(session, "GET", LOGIN_PAGE_URL, make_response(200, LOGIN_PAGE_URL, html))

    with pytest.raises(ProtocolError):
        dgut_daka.login(session, CREDENTIALS, timeout=5)
    assert dgut_daka.LOGIN_POST_URL not in [c.url for c in session.calls]


def test_full_handshake_returns_raw_body_of_third_hop():
    session = handshake_session()

    result = dgut_daka.login(session, CREDENTIALS, timeout=5)

    # body is kept as served, trailing newline included
    assert result.check_url == CHECK_URL + "\n"
    assert result.bearer_token == "tok-A"
    assert result.client_id == CLIENT_ID
    assert result.login_url == LOGIN_PAGE_URL
    assert [(c.method, c.url) for c in session.calls] == [
        ("GET", dgut_daka.BOOTSTRAP_URL),
        ("GET", dgut_daka.build_authorize_url(CLIENT_ID)),
        ("GET", LOGIN_PAGE_URL),
        ("POST", dgut_daka.LOGIN_POST_URL),
        ("GET", HOP1_URL),
        ("GET", HOP2_URL),
        ("POST", dgut_daka.BEARER_URL),
        ("GET", HOP3_URL),
    ]


def test_only_the_final_fetch_is_bearer_authenticated():
    session = handshake_session()

    dgut_daka.login(session, CREDENTIALS, timeout=5)

    authorized = [c.url for c in session.calls if "Authorization" in c.headers]
    assert authorized == [HOP3_URL]
    assert session.calls[-1].headers["Authorization"] == "Bearer tok-A"


def test_every_call_disables_redirects_and_uses_timeout():
    session = handshake_session()

    dgut_daka.login(session, CREDENTIALS, timeout=7.5)

    for call in session.calls:
        assert call.kwargs["allow_redirects"] is False
        assert call.kwargs["timeout"] == 7.5


def test_login_form_carries_protocol_fields():
    session = handshake_session()

    dgut_daka.login(session, CREDENTIALS, timeout=5)

    post = next(c for c in session.calls if c.url == dgut_daka.LOGIN_POST_URL)
    form = post.kwargs["data"]
    assert form["username"] == CREDENTIALS.username
    assert form["password"] != CREDENTIALS.password
    assert {k: v for k, v in form.items() if k not in ("username", "password")} == {
        "captcha": "",
        "_eventId": "submit",
        "cllt": "userNameLogin",
        "dllt": "generalLogin",
        "lt": "",
        "execution": EXECUTION,
        "client_id": CLIENT_ID,
        "redirect_uri": "https://yqfk-daka.dgut.edu.cn/new_login/dgut",
        "response_type": "code",
        "client_name": "CasOAuthClient",
    }


def test_bearer_exchange_sends_code_and_fixed_state():
    session = handshake_session()

    dgut_daka.login(session, CREDENTIALS, timeout=5)

    exchange = next(c for c in session.calls if c.url == dgut_daka.BEARER_URL)
    assert exchange.kwargs["json"] == {"token": "OC-42", "state": "yqfk"}


def test_unauthorized_login_stops_before_redirects():
    session = handshake_session()
    replace_route(
        session,
        "POST",
        dgut_daka.LOGIN_POST_URL,
        make_response(401, dgut_daka.LOGIN_POST_URL, "<html>密码错误</html>"),
    )

    with pytest.raises(AuthenticationError, match="invalid credentials"):
        dgut_daka.login(session, CREDENTIALS, timeout=5)
    assert session.calls[-1].url == dgut_daka.LOGIN_POST_URL
    assert HOP1_URL not in [c.url for c in session.calls]


@pytest.mark.parametrize("status", [200, 403, 500])
def test_other_login_statuses_are_protocol_errors(status):
    session = handshake_session()
    replace_route(
        session,
        "POST",
        dgut_daka.LOGIN_POST_URL,
        make_response(status, dgut_daka.LOGIN_POST_URL, "<html></html>"),
    )

    with pytest.raises(ProtocolError) as excinfo:
        dgut_daka.login(session, CREDENTIALS, timeout=5)
    assert excinfo.value.status == status
    assert HOP1_URL not in [c.url for c in session.calls]


def test_login_redirect_without_location_is_a_protocol_error():
    session = handshake_session()
    replace_route(
        session,
        "POST",
        dgut_daka.LOGIN_POST_URL,
        make_response(302, dgut_daka.LOGIN_POST_URL),
    )

    with pytest.raises(ProtocolError) as excinfo:
        dgut_daka.login(session, CREDENTIALS, timeout=5)
    assert excinfo.value.status == 302
    assert HOP1_URL not in [c.url for c in session.calls]


def test_broken_redirect_chain_aborts_before_bearer_exchange():
    session = handshake_session()
    replace_route(session, "GET", HOP2_URL, make_response(200, HOP2_URL, "<html></html>"))

    with pytest.raises(ProtocolError):
        dgut_daka.login(session, CREDENTIALS, timeout=5)
    assert dgut_daka.BEARER_URL not in [c.url for c in session.calls]


def test_chase_stops_after_fixed_hop_count():
    session = FakeSession()
    session.add("GET", HOP1_URL, redirect(HOP1_URL, HOP2_URL))
    session.add("GET", HOP2_URL, redirect(HOP2_URL, HOP3_URL))
    session.add("GET", HOP3_URL, redirect(HOP3_URL, "https://example.invalid/never"))

    chain = dgut_daka.chase_redirects(session, HOP1_URL, timeout=5)

    assert chain.urls == (HOP1_URL, HOP2_URL, HOP3_URL)
    assert len(session.calls) == 2


def test_relative_location_is_resolved_against_request_url():
    session = FakeSession()
    session.add("GET", HOP1_URL, redirect(HOP1_URL, "/authserver/oauth2.0/authorize?step=2"))
    step2 = "https://auth.dgut.edu.cn/authserver/oauth2.0/authorize?step=2"
    session.add("GET", step2, redirect(step2, HOP3_URL))

    chain = dgut_daka.chase_redirects(session, HOP1_URL, timeout=5)

    assert chain.urls[1] == step2


def test_missing_code_on_third_hop():
    chain = RedirectChain(urls=(HOP1_URL, HOP2_URL, "https://yqfk-daka.dgut.edu.cn/new_login/dgut"))

    with pytest.raises(ProtocolError):
        dgut_daka.extract_code(chain)


def test_bearer_without_access_token_is_a_protocol_error():
    session = handshake_session()
    replace_route(
        session,
        "POST",
        dgut_daka.BEARER_URL,
        make_response(200, dgut_daka.BEARER_URL, json_body={"detail": "expired"}),
    )

    with pytest.raises(ProtocolError):
        dgut_daka.login(session, CREDENTIALS, timeout=5)
    assert "Authorization" not in session.headers


def test_transport_failure_is_wrapped_with_step_name():
    session = handshake_session()
    replace_route(session, "GET", HOP1_URL, requests.Timeout("read timed out"))

    with pytest.raises(TransportError) as excinfo:
        dgut_daka.login(session, CREDENTIALS, timeout=5)
    assert excinfo.value.step == "redirect hop 1"
    assert isinstance(excinfo.value.__cause__, requests.Timeout)


def test_empty_check_url_body():
    session = handshake_session(check_url="   ")

    with pytest.raises(ProtocolError):
        dgut_daka.login(session, CREDENTIALS, timeout=5)
