#!/usr/bin/env python3
import base64
import json
import logging
import re
import secrets
import sys
import time
from dataclasses import dataclass
from enum import Enum
from html.parser import HTMLParser
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urljoin, urlparse

import requests
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))
CONFIG_PATH = PROJECT_ROOT / "config" / "settings.json"
LOG_DIR = PROJECT_ROOT / "logs"

logger = logging.getLogger("dgut_daka")

API_BASE = "https://yqfk-daka-api.dgut.edu.cn"
AUTH_BASE = "https://auth.dgut.edu.cn"
BOOTSTRAP_URL = f"{API_BASE}/new_login"
BEARER_URL = f"{API_BASE}/auth"
RECORD_URL = f"{API_BASE}/record/"
AUTHORIZE_URL = f"{AUTH_BASE}/authserver/oauth2.0/authorize"
LOGIN_POST_URL = (
    f"{AUTH_BASE}/authserver/login"
    f"?service={AUTH_BASE}/authserver/oauth2.0/callbackAuthorize"
)
REDIRECT_URI = "https://yqfk-daka.dgut.edu.cn/new_login/dgut"
OAUTH_STATE = "yqfk"
CLIENT_NAME = "CasOAuthClient"
SUCCESS_PHRASE = "您今天已打卡成功！"

REDIRECT_STATUSES = (301, 302, 303, 307, 308)
# POST Location + two chased Locations; fixed by the auth host.
REDIRECT_HOPS = 3

AES_CHARS = "ABCDEFGHJKMNPQRSTWXYZabcdefhijkmnprstwxyz2345678"
AES_PREFIX_LENGTH = 64
AES_IV_LENGTH = 16

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_AUTH = 3
EXIT_PROTOCOL = 4
EXIT_CHECK = 5


class DakaError(Exception):
    """Base class for every failure of a check-in attempt."""

    exit_code = EXIT_PROTOCOL

    def __init__(self, message: str, response_text: str = "") -> None:
        super().__init__(message)
        self.response_text = response_text


class AuthenticationError(DakaError):
    """The auth host rejected the username/password pair (HTTP 401)."""

    exit_code = EXIT_AUTH


class ProtocolError(DakaError):
    """Unexpected status or response shape; usually an upstream API change."""

    def __init__(
        self,
        detail: str,
        status: Optional[int] = None,
        response_text: str = "",
    ) -> None:
        message = detail if status is None else f"{detail} (status={status})"
        super().__init__(message, response_text)
        self.status = status
        self.detail = detail


class TransportError(DakaError):
    """A request failed before any response arrived (timeout, DNS, TLS)."""

    def __init__(self, step: str, cause: requests.RequestException) -> None:
        super().__init__(f"{step}: {cause}")
        self.step = step


class CheckError(DakaError):
    """Record was posted but the server did not confirm the check-in."""

    exit_code = EXIT_CHECK

    def __init__(self, server_message: str, response_text: str = "") -> None:
        super().__init__(server_message, response_text)
        self.server_message = server_message


class HandshakeState(Enum):
    DISCOVER_PAGE = "DiscoverPage"
    ENCRYPT = "Encrypt"
    POST_LOGIN = "PostLogin"
    CHASE_REDIRECTS = "ChaseRedirects"
    EXTRACT_CODE = "ExtractCode"
    EXCHANGE_BEARER = "ExchangeBearer"
    FETCH_CHECK_URL = "FetchCheckUrl"


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={mask_value(self.username)!r}, password='***')"


@dataclass(frozen=True)
class LoginInfo:
    login_url: str
    client_id: str


@dataclass(frozen=True)
class LoginPage:
    salt: str
    execution: str


@dataclass(frozen=True)
class RedirectChain:
    urls: Tuple[str, ...]

    @property
    def target(self) -> str:
        return self.urls[-1]


@dataclass(frozen=True)
class HandshakeSession:
    login_url: str
    client_id: str
    check_url: str
    bearer_token: str


@dataclass(frozen=True)
class CheckRecord:
    raw_json: str


@dataclass
class CheckinResult:
    username: str
    success: bool
    message: str
    exit_code: int


class AttributeScraper(HTMLParser):
    """Collects the ``value`` attribute of elements looked up by id."""

    def __init__(self, wanted_ids: Tuple[str, ...]) -> None:
        super().__init__()
        self.wanted_ids = wanted_ids
        self.values: Dict[str, str] = {}

    def handle_starttag(self, tag: str, attrs: list[Tuple[str, Optional[str]]]) -> None:
        attrs_dict = dict(attrs)
        element_id = attrs_dict.get("id")
        if element_id in self.wanted_ids and element_id not in self.values:
            self.values[element_id] = attrs_dict.get("value") or ""


def load_config(config_path: Path = CONFIG_PATH) -> dict:
    with config_path.open("r", encoding="utf-8") as f:
        config = json.load(f)
    if not isinstance(config, dict):
        raise ValueError("settings must be a JSON object")
    return config


def settings_section(config: dict, name: str) -> dict:
    section = config.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"settings section '{name}' must be an object")
    return section


def load_accounts(config: dict) -> list[Credentials]:
    accounts = config.get("accounts")
    if not isinstance(accounts, list) or not accounts:
        raise ValueError("settings must list at least one account")
    result: list[Credentials] = []
    for idx, entry in enumerate(accounts):
        if not isinstance(entry, dict):
            raise ValueError(f"account #{idx} must be an object with username and password")
        username = str(entry.get("username") or "").strip()
        password = str(entry.get("password") or "")
        if not username or not password:
            raise ValueError(f"account #{idx} needs both username and password")
        result.append(Credentials(username=username, password=password))
    return result


def mask_value(value: str, keep: int = 2) -> str:
    if not value:
        return ""
    if len(value) <= keep * 2:
        return "*" * len(value)
    return f"{value[:keep]}***{value[-keep:]}"


def sanitize_response(text: str, username: str, password: str) -> str:
    if not text:
        return ""
    sanitized = text
    for value in (username, password):
        if value:
            sanitized = sanitized.replace(value, "***")
    sanitized = re.sub(r"(Bearer\s+)[A-Za-z0-9._\-]+", r"\1***", sanitized)
    sanitized = re.sub(r'("access_token"\s*:\s*")[^"]*(")', r"\1***\2", sanitized)
    return sanitized


def save_response_snapshot(debug_config: dict, text: str) -> None:
    if not text:
        return
    response_dir = Path(debug_config.get("response_dir", "logs/daka_responses"))
    max_bytes = int(debug_config.get("max_response_bytes", 32768))
    if not response_dir.is_absolute():
        response_dir = PROJECT_ROOT / response_dir
    response_dir.mkdir(parents=True, exist_ok=True)
    timestamp = time.strftime("%Y%m%d_%H%M%S")
    file_path = response_dir / f"response_{timestamp}.html"
    payload = text.encode("utf-8", errors="ignore")[:max_bytes]
    file_path.write_bytes(payload)
    logger.info("Saved response snapshot: %s", file_path)


def query_param(url: str, name: str) -> str:
    values = parse_qs(urlparse(url).query).get(name)
    if values:
        return values[0]
    return ""


def parse_json(response: requests.Response, what: str) -> dict:
    try:
        body = response.json()
    except ValueError:
        raise ProtocolError(
            f"{what}: response is not JSON", response.status_code, response.text
        ) from None
    if not isinstance(body, dict):
        raise ProtocolError(
            f"{what}: expected a JSON object", response.status_code, response.text
        )
    return body


def require_ok(response: requests.Response, what: str) -> None:
    if not 200 <= response.status_code < 300:
        raise ProtocolError(f"{what}: unexpected status", response.status_code, response.text)


def require_location(response: requests.Response, what: str) -> str:
    location = response.headers.get("Location", "")
    if response.status_code not in REDIRECT_STATUSES or not location:
        raise ProtocolError(
            f"{what}: expected a redirect with Location", response.status_code, response.text
        )
    return urljoin(response.url or "", location)


def http_get(session: requests.Session, url: str, timeout: float, step: str) -> requests.Response:
    try:
        return session.get(url, allow_redirects=False, timeout=timeout)
    except requests.RequestException as exc:
        raise TransportError(step, exc) from exc


def http_post(
    session: requests.Session,
    url: str,
    timeout: float,
    step: str,
    **kwargs,
) -> requests.Response:
    try:
        return session.post(url, allow_redirects=False, timeout=timeout, **kwargs)
    except requests.RequestException as exc:
        raise TransportError(step, exc) from exc


def build_authorize_url(client_id: str) -> str:
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": REDIRECT_URI,
        "state": OAUTH_STATE,
    }
    return f"{AUTHORIZE_URL}?{urlencode(params, safe=':/')}"


def discover_login(session: requests.Session, timeout: float) -> LoginInfo:
    """获取登录页面地址和之后用到的 client_id。"""
    response = http_get(session, BOOTSTRAP_URL, timeout, "bootstrap")
    body = parse_json(response, "bootstrap")
    data = body.get("data")
    bootstrap_url = data.get("url") if isinstance(data, dict) else None
    if not isinstance(bootstrap_url, str) or not bootstrap_url:
        raise ProtocolError("bootstrap: data.url missing", response.status_code, response.text)

    client_id = query_param(bootstrap_url, "client_id")
    if not client_id:
        raise ProtocolError("bootstrap: client_id missing from data.url", response.status_code)
    logger.debug("Bootstrap resolved client_id=%s", mask_value(client_id, keep=4))

    authorize = http_get(session, build_authorize_url(client_id), timeout, "authorize")
    login_url = require_location(authorize, "authorize")
    logger.debug("Authorize redirected to login page %s", login_url[:100])
    return LoginInfo(login_url=login_url, client_id=client_id)


def fetch_login_page(session: requests.Session, login_url: str, timeout: float) -> LoginPage:
    response = http_get(session, login_url, timeout, "login page")
    require_ok(response, "login page")
    scraper = AttributeScraper(("pwdEncryptSalt", "execution"))
    scraper.feed(response.text)
    scraper.close()
    execution = scraper.values.get("execution", "")
    if not execution:
        raise ProtocolError("login page: execution token not found", response.status_code)
    salt = scraper.values.get("pwdEncryptSalt", "")
    if not salt:
        logger.warning("Login page has no pwdEncryptSalt; password is sent unencrypted")
    return LoginPage(salt=salt, execution=execution)


def random_string(length: int, choice: Callable[[str], str] = secrets.choice) -> str:
    return "".join(choice(AES_CHARS) for _ in range(length))


def encrypt_password(
    password: str,
    salt: str,
    choice: Callable[[str], str] = secrets.choice,
) -> str:
    """
    Encrypt ``password`` the way the CAS login page script does.

    plaintext = 64 random chars + password, key = stripped salt (UTF-8),
    iv = 16 random chars, AES-CBC with PKCS#7 padding, Base64 output.
    An empty salt leaves the password untouched.
    """
    key = (salt or "").strip()
    if not key:
        return password
    prefix = random_string(AES_PREFIX_LENGTH, choice)
    iv = random_string(AES_IV_LENGTH, choice)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    data = padder.update((prefix + password).encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key.encode("utf-8")), modes.CBC(iv.encode("utf-8"))).encryptor()
    ciphertext = encryptor.update(data) + encryptor.finalize()
    return base64.b64encode(ciphertext).decode("ascii")


def build_login_form(
    credentials: Credentials,
    encrypted_password: str,
    page: LoginPage,
    info: LoginInfo,
) -> Dict[str, str]:
    return {
        "username": credentials.username,
        "password": encrypted_password,
        "captcha": "",
        "_eventId": "submit",
        "cllt": "userNameLogin",
        "dllt": "generalLogin",
        "lt": "",
        "execution": page.execution,
        "client_id": info.client_id,
        "redirect_uri": REDIRECT_URI,
        "response_type": "code",
        "client_name": CLIENT_NAME,
    }


def post_login(
    session: requests.Session,
    form: Dict[str, str],
    login_url: str,
    timeout: float,
) -> str:
    parsed = urlparse(login_url)
    headers = {
        "Origin": f"{parsed.scheme}://{parsed.netloc}",
        "Referer": login_url,
    }
    logger.debug("Submitting login form fields=%s", ",".join(sorted(form.keys())))
    response = http_post(session, LOGIN_POST_URL, timeout, "login", data=form, headers=headers)
    if response.status_code == 401:
        raise AuthenticationError("invalid credentials")
    if response.status_code not in REDIRECT_STATUSES:
        raise ProtocolError("login: unexpected status", response.status_code, response.text)
    return require_location(response, "login")


def chase_redirects(session: requests.Session, first_location: str, timeout: float) -> RedirectChain:
    """经过固定的多次重定向得到最终打卡地址。"""
    urls = [first_location]
    while len(urls) < REDIRECT_HOPS:
        hop = len(urls)
        response = http_get(session, urls[-1], timeout, f"redirect hop {hop}")
        urls.append(require_location(response, f"redirect hop {hop}"))
        logger.debug("Redirect hop %d: status=%d", hop, response.status_code)
    return RedirectChain(urls=tuple(urls))


def extract_code(chain: RedirectChain) -> str:
    code = query_param(chain.target, "code")
    if not code:
        raise ProtocolError("redirect chain: authorization code missing")
    return code


def exchange_bearer(session: requests.Session, code: str, timeout: float) -> str:
    response = http_post(
        session,
        BEARER_URL,
        timeout,
        "bearer exchange",
        json={"token": code, "state": OAUTH_STATE},
    )
    require_ok(response, "bearer exchange")
    token = parse_json(response, "bearer exchange").get("access_token")
    if not isinstance(token, str) or not token:
        raise ProtocolError("bearer exchange: access_token missing", response.status_code)
    session.headers["Authorization"] = f"Bearer {token}"
    return token


def fetch_check_url(session: requests.Session, chain: RedirectChain, timeout: float) -> str:
    response = http_get(session, chain.target, timeout, "check url")
    require_ok(response, "check url")
    if not response.text.strip():
        raise ProtocolError("check url: empty body", response.status_code)
    return response.text


def login(
    session: requests.Session,
    credentials: Credentials,
    timeout: float,
    choice: Callable[[str], str] = secrets.choice,
) -> HandshakeSession:
    """
    Run the full handshake and return the authenticated session state.

    Steps run strictly in order; the first failure propagates and nothing
    is resumed. Retrying means calling this again with a fresh session.
    """
    info = discover_login(session, timeout)

    logger.debug("Handshake state=%s", HandshakeState.DISCOVER_PAGE.value)
    page = fetch_login_page(session, info.login_url, timeout)

    logger.debug("Handshake state=%s", HandshakeState.ENCRYPT.value)
    try:
        encrypted = encrypt_password(credentials.password, page.salt, choice)
    except ValueError as exc:
        raise ProtocolError(f"login page: unusable pwdEncryptSalt ({exc})") from exc

    logger.debug("Handshake state=%s", HandshakeState.POST_LOGIN.value)
    form = build_login_form(credentials, encrypted, page, info)
    first_location = post_login(session, form, info.login_url, timeout)

    logger.debug("Handshake state=%s", HandshakeState.CHASE_REDIRECTS.value)
    chain = chase_redirects(session, first_location, timeout)

    logger.debug("Handshake state=%s", HandshakeState.EXTRACT_CODE.value)
    code = extract_code(chain)

    logger.debug("Handshake state=%s", HandshakeState.EXCHANGE_BEARER.value)
    token = exchange_bearer(session, code, timeout)

    logger.debug("Handshake state=%s", HandshakeState.FETCH_CHECK_URL.value)
    check_url = fetch_check_url(session, chain, timeout)

    return HandshakeSession(
        login_url=info.login_url,
        client_id=info.client_id,
        check_url=check_url,
        bearer_token=token,
    )


def get_last_record(session: requests.Session, timeout: float) -> CheckRecord:
    response = http_get(session, RECORD_URL, timeout, "last record")
    require_ok(response, "last record")
    return CheckRecord(raw_json=response.text)


_ESCAPE_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|x[0-9a-fA-F]{2}|.)", re.DOTALL)
_SIMPLE_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "e": "\x1b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "v": "\v",
}


def unescape_message(text: str) -> str:
    def replace(match: re.Match) -> str:
        token = match.group(1)
        if len(token) > 1:
            return chr(int(token[1:], 16))
        return _SIMPLE_ESCAPES.get(token, token)

    return _ESCAPE_RE.sub(replace, text)


def check(session: requests.Session, record: CheckRecord, timeout: float) -> str:
    """生成上传数据打卡并检测是否成功。"""
    try:
        last = json.loads(record.raw_json)
    except ValueError:
        raise ProtocolError("last record: response is not JSON", response_text=record.raw_json) from None
    if not isinstance(last, dict) or "user_data" not in last:
        raise ProtocolError("last record: user_data missing", response_text=record.raw_json)

    payload = {"data": {"user_data": last["user_data"]}}
    response = http_post(session, RECORD_URL, timeout, "check in", json=payload)
    message = parse_json(response, "check in").get("message")
    if not isinstance(message, str):
        raise ProtocolError("check in: message missing", response.status_code, response.text)

    message = unescape_message(message)
    if SUCCESS_PHRASE not in message:
        raise CheckError(message, response.text)
    return message


def run_checkin(
    credentials: Credentials,
    timeout: float,
    user_agent: str = "",
    session_factory: Callable[[], requests.Session] = requests.Session,
) -> str:
    with session_factory() as session:
        if user_agent:
            session.headers.update({"User-Agent": user_agent})
        handshake = login(session, credentials, timeout)
        logger.info(
            "Logged in user=%s check_host=%s",
            mask_value(credentials.username),
            urlparse(handshake.check_url).netloc,
        )
        record = get_last_record(session, timeout)
        return check(session, record, timeout)


def run_account(
    credentials: Credentials,
    timeout: float,
    user_agent: str,
    debug_config: dict,
    session_factory: Callable[[], requests.Session] = requests.Session,
) -> CheckinResult:
    user = mask_value(credentials.username)
    try:
        message = run_checkin(credentials, timeout, user_agent, session_factory)
    except DakaError as exc:
        logger.error("Check-in failed user=%s kind=%s error=%s", user, type(exc).__name__, exc)
        if debug_config.get("save_response") and exc.response_text:
            safe_text = sanitize_response(exc.response_text, credentials.username, credentials.password)
            save_response_snapshot(debug_config, safe_text)
        return CheckinResult(
            username=credentials.username,
            success=False,
            message=str(exc),
            exit_code=exc.exit_code,
        )

    logger.info("Check-in success user=%s message=%s", user, message)
    return CheckinResult(
        username=credentials.username,
        success=True,
        message=message,
        exit_code=EXIT_OK,
    )


def main(
    config_path: Path = CONFIG_PATH,
    session_factory: Callable[[], requests.Session] = requests.Session,
) -> int:
    try:
        config = load_config(config_path)
    except (OSError, ValueError) as exc:
        logging.basicConfig(level=logging.INFO)
        logger.error("Cannot read settings %s: %s", config_path, exc)
        return EXIT_CONFIG

    from config.logging_config import setup_logging

    log_dir = Path(config.get("log_dir") or LOG_DIR)
    if not log_dir.is_absolute():
        log_dir = PROJECT_ROOT / log_dir
    setup_logging(log_dir, log_level=config.get("log_level", "INFO"))

    try:
        accounts = load_accounts(config)
        http_config = settings_section(config, "http")
        debug_config = settings_section(config, "debug")
        timeout = float(http_config.get("timeout_seconds", 8))
    except (TypeError, ValueError) as exc:
        logger.error("Invalid settings: %s", exc)
        return EXIT_CONFIG
    user_agent = http_config.get("user_agent") or ""

    results = [
        run_account(credentials, timeout, user_agent, debug_config, session_factory)
        for credentials in accounts
    ]
    failed = [result for result in results if not result.success]
    logger.info("Check-in finished ok=%d failed=%d", len(results) - len(failed), len(failed))
    if failed:
        return failed[0].exit_code
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
