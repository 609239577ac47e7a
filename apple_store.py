"""Apple App Store Connect integration utilities."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import jwt
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.appstoreconnect.apple.com/v1"
DEFAULT_API_TIMEOUT = 60
DEFAULT_BULK_PACING_SECONDS = 1.0

_TOKEN_AUDIENCE = "appstoreconnect-v1"
_TOKEN_LIFETIME = 19 * 60  # Keep lifetime under Apple's 20 minute limit
_TOKEN_CLOCK_SKEW = 10
_TOKEN_REFRESH_MARGIN = 30

_MAX_READ_ATTEMPTS = 3
_RETRY_DELAY = 2


class AppleStoreError(RuntimeError):
    """Base class for every error raised while talking to App Store Connect."""


class AppleStoreConfigError(AppleStoreError):
    """Raised when required Apple configuration is missing."""


class AppleStoreDecodeError(AppleStoreError):
    """Raised when a vendor response lacks a field the pricing code relies on."""


class AppleStoreApiError(AppleStoreError):
    """Represents an error response returned by the Apple API."""

    def __init__(
        self,
        status_code: int,
        body_text: str,
        errors: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.status_code = status_code
        self.body_text = body_text
        self.errors = errors or []
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        if self.errors:
            summary = summarize_api_errors(self.errors)
            if summary:
                return f"Apple API error {self.status_code}: {summary}"
        if self.body_text:
            return f"Apple API error {self.status_code}: {self.body_text}"
        return f"Apple API error {self.status_code}"


class AppleStoreAuthError(AppleStoreApiError):
    """The API rejected the bearer token (HTTP 401)."""

    def _build_message(self) -> str:
        guidance = (
            "Apple API authentication failed. Check the issuer id, key id and "
            "private key file, and make sure the server clock is accurate."
        )
        detail = summarize_api_errors(self.errors) if self.errors else self.body_text
        if detail:
            return f"{guidance} Original error: {detail}"
        return guidance


def _normalize_error_entry(entry: Dict[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for key in ("id", "status", "code", "title", "detail"):
        value = entry.get(key)
        if value is None:
            continue
        if isinstance(value, (str, int)):
            normalized[key] = str(value)
        else:
            normalized[key] = json.dumps(value, ensure_ascii=False, sort_keys=True)
    return normalized


def summarize_api_errors(errors: Iterable[Dict[str, Any]]) -> str:
    parts: List[str] = []
    for entry in errors:
        if not isinstance(entry, dict):
            continue
        normalized = _normalize_error_entry(entry)
        code = normalized.get("code") or normalized.get("status")
        detail = normalized.get("detail") or normalized.get("title")
        if code or detail:
            snippet = " ".join(filter(None, [f"[{code}]" if code else "", detail]))
            parts.append(snippet)
        else:
            remaining = {
                key: value
                for key, value in normalized.items()
                if key not in {"code", "status", "detail", "title"}
            }
            if remaining:
                parts.append(json.dumps(remaining, ensure_ascii=False, sort_keys=True))
    return "; ".join(parts)


_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
_KEY_ID_RE = re.compile(r"^[A-Z0-9]{10}$")


def _require_env(env: Mapping[str, str], name: str) -> str:
    value = env.get(name)
    if value is None:
        raise AppleStoreConfigError(f"Environment variable '{name}' is not set.")
    value = value.strip()
    if not value:
        raise AppleStoreConfigError(f"Environment variable '{name}' is empty.")
    return value


def _number_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise AppleStoreConfigError(
            f"Environment variable '{name}' must be a number, got {raw!r}."
        ) from exc
    if value < 0:
        raise AppleStoreConfigError(f"Environment variable '{name}' must not be negative.")
    return value


@dataclass(frozen=True)
class AppleStoreConfig:
    issuer_id: str
    key_id: str
    private_key_path: str
    app_id: str
    api_base_url: str = DEFAULT_API_BASE_URL
    timeout: float = DEFAULT_API_TIMEOUT
    bulk_pacing_seconds: float = DEFAULT_BULK_PACING_SECONDS

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AppleStoreConfig":
        """Build the configuration from environment variables.

        ``env`` defaults to ``os.environ``; the caller is expected to have run
        ``load_dotenv()`` beforehand when a ``.env`` file should be honoured.
        """
        env = os.environ if env is None else env

        issuer_id = _require_env(env, "APP_STORE_ISSUER_ID")
        if not _UUID_RE.match(issuer_id):
            raise AppleStoreConfigError(
                "Environment variable 'APP_STORE_ISSUER_ID' must be an issuer id (UUID)."
            )
        key_id = _require_env(env, "APP_STORE_KEY_ID").upper()
        if not _KEY_ID_RE.match(key_id):
            raise AppleStoreConfigError(
                "Environment variable 'APP_STORE_KEY_ID' must be 10 upper-case alphanumerics."
            )

        return cls(
            issuer_id=issuer_id,
            key_id=key_id,
            private_key_path=_require_env(env, "APP_STORE_PRIVATE_KEY_PATH"),
            app_id=_require_env(env, "APP_STORE_APP_ID"),
            api_base_url=(env.get("APP_STORE_API_BASE_URL") or DEFAULT_API_BASE_URL).strip(),
            timeout=_number_env(env, "APPLE_API_TIMEOUT", DEFAULT_API_TIMEOUT),
            bulk_pacing_seconds=_number_env(
                env, "BULK_EDIT_PACING_SECONDS", DEFAULT_BULK_PACING_SECONDS
            ),
        )


def load_private_key(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as fp:
            contents = fp.read()
    except OSError as exc:
        raise AppleStoreConfigError(
            f"Cannot read the private key from APP_STORE_PRIVATE_KEY_PATH: {exc}"
        ) from exc

    contents = contents.lstrip("\ufeff").strip()
    if "-----BEGIN" not in contents or "PRIVATE KEY-----" not in contents:
        raise AppleStoreConfigError(
            "The Apple API private key is not a PEM file. Use the .p8 file "
            "downloaded from App Store Connect."
        )

    try:
        key = serialization.load_pem_private_key(contents.encode("utf-8"), password=None)
    except (TypeError, ValueError) as exc:
        raise AppleStoreConfigError(
            "The Apple API private key could not be parsed. Check that the key file is intact."
        ) from exc
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise AppleStoreConfigError("The Apple API private key must be an ES256 (ECDSA) key.")
    if key.curve.name not in {"secp256r1", "prime256v1"}:
        raise AppleStoreConfigError("The Apple API private key must use the P-256 curve.")

    return contents + "\n"


class AppStoreTokenProvider:
    """Mints short-lived ES256 bearer tokens for the App Store Connect API."""

    def __init__(self, config: AppleStoreConfig, *, clock=time.time) -> None:
        self._config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[Tuple[str, int]] = None
        self._private_key: Optional[str] = None

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None

    def generate(self, *, force_refresh: bool = False) -> str:
        now = int(self._clock())
        with self._lock:
            if force_refresh:
                self._cached = None
            if self._cached and now < self._cached[1] - _TOKEN_REFRESH_MARGIN:
                return self._cached[0]

            if self._private_key is None:
                self._private_key = load_private_key(self._config.private_key_path)

            issued_at = now - _TOKEN_CLOCK_SKEW
            expires_at = issued_at + _TOKEN_LIFETIME
            payload = {
                "iss": self._config.issuer_id,
                "iat": issued_at,
                "exp": expires_at,
                "aud": _TOKEN_AUDIENCE,
            }
            try:
                token = jwt.encode(
                    payload,
                    self._private_key,
                    algorithm="ES256",
                    headers={"kid": self._config.key_id, "typ": "JWT"},
                )
            except (TypeError, ValueError, jwt.PyJWTError) as exc:
                raise AppleStoreConfigError(
                    "Failed to sign the JWT. Check that the private key is valid."
                ) from exc

            self._cached = (token, expires_at)
            logger.debug("Generated App Store Connect token valid until %s", expires_at)
            return token


def extract_cursor(next_link: Optional[str]) -> Optional[str]:
    if not next_link:
        return None

    parsed = urlparse(next_link)
    query = parse_qs(parsed.query or "")
    for key in ("cursor", "page[cursor]"):
        values = query.get(key)
        if values:
            return values[0]
    if "page%5Bcursor%5D=" in next_link:
        return next_link.split("page%5Bcursor%5D=", 1)[1].split("&", 1)[0]
    return None


def next_link(response: Dict[str, Any]) -> Optional[str]:
    links = response.get("links") or {}
    link = links.get("next") if isinstance(links, dict) else None
    return link if isinstance(link, str) and link else None


def index_included(included: Iterable[Any]) -> Dict[Tuple[str, str], Dict[str, Any]]:
    """Map ``(type, id)`` to each resource of a JSON:API ``included`` array."""
    mapping: Dict[Tuple[str, str], Dict[str, Any]] = {}
    for entry in included or []:
        if not isinstance(entry, dict):
            continue
        entry_type = entry.get("type")
        entry_id = entry.get("id")
        if isinstance(entry_type, str) and isinstance(entry_id, str):
            mapping[(entry_type, entry_id)] = entry
    return mapping


class AppleStoreClient:
    """Thin wrapper around the App Store Connect REST API."""

    def __init__(
        self,
        config: AppleStoreConfig,
        token_provider: AppStoreTokenProvider,
        *,
        session: Optional[requests.Session] = None,
        sleep=time.sleep,
    ) -> None:
        self.config = config
        self._tokens = token_provider
        self._session = session or requests.Session()
        self._sleep = sleep

    @property
    def app_id(self) -> str:
        return self.config.app_id

    def _build_url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        if not path.startswith("/"):
            path = "/" + path
        base_url = self.config.api_base_url.rstrip("/")
        if path.startswith("/v1/") and base_url.endswith("/v1"):
            base_url = base_url[: -len("/v1")]
        return base_url + path

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._tokens.generate()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = self._build_url(path)
        logger.debug("Apple API Request %s %s", method, url)
        if logger.isEnabledFor(logging.DEBUG) and params:
            logger.debug("  Params: %s", params)

        attempts = _MAX_READ_ATTEMPTS if method.upper() == "GET" else 1
        for attempt in range(attempts):
            try:
                response = self._session.request(
                    method,
                    url,
                    headers=self._headers(),
                    params=params,
                    json=json,
                    timeout=self.config.timeout,
                )
                break
            except requests.exceptions.Timeout:
                if attempt < attempts - 1:
                    wait_time = _RETRY_DELAY * (attempt + 1)
                    logger.warning(
                        "Timeout on %s %s (attempt %d/%d), retrying in %ds...",
                        method, url, attempt + 1, attempts, wait_time,
                    )
                    self._sleep(wait_time)
                    continue
                logger.error("Timeout on %s %s after %d attempts, giving up", method, url, attempts)
                raise
            except requests.exceptions.RequestException as exc:
                logger.error("Request error on %s %s: %s", method, url, exc)
                raise

        if response.status_code >= 400:
            self._raise_for_status(response, url)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _raise_for_status(self, response: requests.Response, url: str) -> None:
        body_text = (response.text or "").strip()
        errors: List[Dict[str, Any]] = []
        if body_text:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if isinstance(payload, dict) and isinstance(payload.get("errors"), list):
                errors = [entry for entry in payload["errors"] if isinstance(entry, dict)]

        summary = summarize_api_errors(errors) if errors else body_text
        logger.error(
            "Apple API error %s: %s | URL: %s",
            response.status_code,
            summary or "No response body",
            url,
        )
        if response.status_code == 401:
            self._tokens.invalidate()
            raise AppleStoreAuthError(response.status_code, body_text, errors)
        raise AppleStoreApiError(response.status_code, body_text, errors)

    def get(self, path: str, *, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.request("GET", path, params=params)

    def post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.request("POST", path, json=payload)
