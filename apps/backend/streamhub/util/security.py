from __future__ import annotations

import json
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import SplitResult, quote, unquote, urlsplit, urlunsplit

from cryptography.fernet import Fernet, InvalidToken

RTSP_PASSWORD_RE = re.compile(r"(rtsps?://[^:@/\s]+:)([^@/\s]+)(@)", re.IGNORECASE)
PASSWORD_PAIR_RE = re.compile(r"(password\s*[=:]\s*)([^\s,;]+)", re.IGNORECASE)
TOKEN_RE = re.compile(r"(token\s*[=:]\s*)([^\s,;]+)", re.IGNORECASE)
SOURCE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")
RTSP_SCHEMES = {"rtsp", "rtsps"}


@dataclass(frozen=True)
class RtspParts:
    scheme: str
    host: str
    port: int | None
    path: str
    username: str | None
    password: str | None


def sanitize_rtsp_url(url: str) -> str:
    try:
        parts: SplitResult = urlsplit(url)
        if parts.scheme.lower() not in RTSP_SCHEMES:
            return url
        hostname = parts.hostname or ""
        user = parts.username
        redacted_user = user if user else "user"
        port = f":{parts.port}" if parts.port else ""
        netloc = f"{redacted_user}:***@{hostname}{port}" if user or parts.password else f"{hostname}{port}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
    except ValueError:
        return RTSP_PASSWORD_RE.sub(r"\1***\3", url)


def resolve_path_within_base(base_dir: Path, untrusted_path: str | Path) -> Path | None:
    try:
        resolved_base = base_dir.resolve()
        target = (resolved_base / Path(untrusted_path)).resolve()
    except (OSError, RuntimeError, ValueError):
        return None

    try:
        target.relative_to(resolved_base)
    except ValueError:
        return None
    return target


def validate_source_id(source_id: str) -> str:
    value = str(source_id)
    if not SOURCE_ID_RE.fullmatch(value):
        raise ValueError("Invalid source id")
    return value


def validate_rtsp_url(source: str, *, allow_redacted_password: bool = False) -> str:
    value = str(source)
    if not value:
        raise ValueError("Invalid RTSP source")
    if any(ch.isspace() for ch in value):
        raise ValueError("Invalid RTSP source")

    parts: SplitResult = urlsplit(value)
    if parts.scheme.lower() not in RTSP_SCHEMES:
        raise ValueError("Invalid RTSP source")
    if not parts.hostname:
        raise ValueError("Invalid RTSP source")
    if parts.fragment:
        raise ValueError("Invalid RTSP source")
    if "\\" in parts.path:
        raise ValueError("Invalid RTSP source")

    try:
        _ = parts.port
    except ValueError as exc:
        raise ValueError("Invalid RTSP source") from exc

    password = parts.password or ""
    if password == "***" and not allow_redacted_password:
        raise ValueError("Invalid RTSP source")
    if any(ch.isspace() for ch in password):
        raise ValueError("Invalid RTSP source")

    username = parts.username or ""
    if any(ch.isspace() for ch in username):
        raise ValueError("Invalid RTSP source")

    return value


def split_rtsp_url(url: str) -> RtspParts:
    value = validate_rtsp_url(url, allow_redacted_password=True)
    parts = urlsplit(value)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    password = unquote(parts.password) if parts.password and parts.password != "***" else None
    return RtspParts(
        scheme=parts.scheme.lower(),
        host=parts.hostname or "",
        port=parts.port,
        path=path,
        username=unquote(parts.username) if parts.username else None,
        password=password,
    )


def build_rtsp_url(
    host: str,
    *,
    scheme: str = "rtsp",
    port: int | None = None,
    path: str = "/",
    username: str | None = None,
    password: str | None = None,
) -> str:
    netloc = host
    if ":" in host and not host.startswith("["):
        netloc = f"[{host}]"
    if port:
        netloc = f"{netloc}:{port}"
    if username:
        credentials = quote(username, safe="")
        if password:
            credentials = f"{credentials}:{quote(password, safe='')}"
        netloc = f"{credentials}@{netloc}"
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{scheme}://{netloc}{path}"


def redact_secrets(text: str) -> str:
    text = RTSP_PASSWORD_RE.sub(r"\1***\3", text)
    text = PASSWORD_PAIR_RE.sub(r"\1***", text)
    text = TOKEN_RE.sub(r"\1***", text)
    return text


@dataclass
class SecretReference:
    provider: str
    ref: str

    def as_dict(self) -> dict[str, str]:
        return {"provider": self.provider, "ref": self.ref}


class SecretStore:
    """Camera credentials encrypted at rest with a per-install Fernet key."""

    provider = "encrypted_file"

    def __init__(self, data_dir: Path) -> None:
        config_dir = data_dir / "config"
        config_dir.mkdir(parents=True, exist_ok=True)
        self._secrets_file = config_dir / "secrets.enc.json"
        self._key_file = config_dir / "secrets.key"
        self._lock = threading.RLock()

    def _load_key(self) -> bytes:
        with self._lock:
            return self._load_or_create_key()

    def _load_or_create_key(self) -> bytes:
        if self._key_file.exists():
            return self._key_file.read_bytes()
        key = Fernet.generate_key()
        self._key_file.write_bytes(key)
        try:
            os.chmod(self._key_file, 0o600)
        except PermissionError:
            pass
        return key

    def _read_map(self) -> dict[str, str]:
        if not self._secrets_file.exists():
            return {}
        try:
            return json.loads(self._secrets_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return {}

    def _write_map(self, payload: dict[str, str]) -> None:
        tmp_path = self._secrets_file.with_suffix(self._secrets_file.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=True, indent=2), encoding="utf-8")
        tmp_path.replace(self._secrets_file)

    def store(self, name: str, value: str) -> SecretReference:
        with self._lock:
            fernet = Fernet(self._load_key())
            payload = self._read_map()
            payload[name] = fernet.encrypt(value.encode("utf-8")).decode("utf-8")
            self._write_map(payload)
        return SecretReference(provider=self.provider, ref=name)

    def forget(self, name: str) -> None:
        with self._lock:
            payload = self._read_map()
            if payload.pop(name, None) is not None:
                self._write_map(payload)

    def get(self, reference: dict[str, str] | SecretReference | None) -> str | None:
        if reference is None:
            return None
        if isinstance(reference, SecretReference):
            provider = reference.provider
            ref = reference.ref
        else:
            provider = reference.get("provider", "")
            ref = reference.get("ref", "")

        if not ref or provider != self.provider:
            return None

        token = self._read_map().get(ref)
        if not token:
            return None
        fernet = Fernet(self._load_key())
        try:
            return fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            return None
