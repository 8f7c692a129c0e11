"""
Decoding of the recursive metadata document into a validated Snapshot.

The service is loosely typed: flags arrive as strings and the windows-keys
attribute is a single string holding one JSON object per line. Decoding runs
in two steps, a structural pass that only checks JSON shapes, then a semantic
pass that parses flags and validates keys.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any

from .errors import DecodeError
from .models import (
    Attributes, InstanceSection, NetworkInterface, ProjectSection, Snapshot, WindowsKey,
)

log = logging.getLogger(__name__)

# strconv.ParseBool syntax, which is what the guest agents accept
_TRUE = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE = frozenset({"0", "f", "F", "FALSE", "false", "False"})

_FLAG_FIELDS = {
    "disable_address_manager": "disable-address-manager",
    "disable_account_manager": "disable-account-manager",
    "enable_diagnostics": "enable-diagnostics",
    "enable_wsfc": "enable-wsfc",
}
_TEXT_FIELDS = {
    "diagnostics": "diagnostics",
    "wsfc_addresses": "wsfc-addrs",
    "wsfc_agent_port": "wsfc-agent-port",
}
_KEY_FIELDS = {
    "email": "email",
    "expire_on": "expireOn",
    "exponent": "exponent",
    "modulus": "modulus",
    "user_name": "userName",
    "hash_function": "hashFunction",
}


class MalformedKeyMemo:
    """Remembers key lines already reported as malformed.

    Only used to keep a persistently broken line from logging on every poll.
    Entries are never evicted; a corrected line is a different string.
    """
    def __init__(self):
        self._seen: set[str] = set()

    def __contains__(self, raw_line: str) -> bool:
        return raw_line in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def report_once(self, raw_line: str, error: Exception) -> bool:
        if raw_line in self._seen:
            return False
        log.error(
            "failed to decode windows key from metadata: %s", error,
            extra={"event": "decode.bad_key", "extra_fields": {"line_len": len(raw_line)}},
        )
        self._seen.add(raw_line)
        return True


# Structural helpers

def _norm(name: str) -> str:
    return name.replace("-", "").replace("_", "").lower()

def _lookup(obj: dict[str, Any], name: str) -> Any:
    """Exact key first, then a case and separator insensitive match."""
    if name in obj:
        return obj[name]
    want = _norm(name)
    for k, v in obj.items():
        if _norm(k) == want:
            return v
    return None

def _string(obj: dict[str, Any], name: str, where: str) -> str:
    value = _lookup(obj, name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise DecodeError(f"{where}.{name}: expected string, got {type(value).__name__}")
    return value

def _object(obj: dict[str, Any], name: str, where: str) -> dict[str, Any]:
    value = _lookup(obj, name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DecodeError(f"{where}.{name}: expected object, got {type(value).__name__}")
    return value

def _list(obj: dict[str, Any], name: str, where: str) -> list[Any]:
    value = _lookup(obj, name)
    if value is None:
        return []
    if not isinstance(value, list):
        raise DecodeError(f"{where}.{name}: expected list, got {type(value).__name__}")
    return value

def _strings(obj: dict[str, Any], name: str, where: str) -> tuple[str, ...]:
    out: list[str] = []
    for i, item in enumerate(_list(obj, name, where)):
        if item is None:
            item = ""
        if not isinstance(item, str):
            raise DecodeError(f"{where}.{name}[{i}]: expected string, got {type(item).__name__}")
        out.append(item)
    return tuple(out)


# Semantic helpers

def parse_bool(raw: str) -> bool | None:
    """
    Parse a string-encoded flag. Returns None for anything that is not a
    recognised boolean, including the empty string: an absent flag is not
    an error and is deliberately not logged.
    """
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    return None

def parse_expiry(raw: str) -> datetime | None:
    text = raw.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(text)
    except ValueError:
        return None
    if ts.tzinfo is None:
        return None
    return ts

def key_expired(key: WindowsKey, now: datetime | None = None) -> bool:
    # Unparsable expiry counts as not expired.
    expiry = parse_expiry(key.expire_on)
    if expiry is None:
        return False
    return expiry < (now or datetime.now(timezone.utc))

def accept_key(key: WindowsKey, now: datetime | None = None) -> bool:
    if not (key.exponent and key.modulus and key.user_name):
        return False
    return not key_expired(key, now)


# Decoders

def decode_key_line(line: str) -> WindowsKey:
    """Structurally decode a single windows-keys line. Raises ValueError, or RecursionError on deep nesting."""
    obj = json.loads(line)
    if obj is None:
        return WindowsKey()
    if not isinstance(obj, dict):
        raise DecodeError(f"windows key: expected object, got {type(obj).__name__}")
    return WindowsKey(**{attr: _string(obj, wire, "windows-key") for attr, wire in _KEY_FIELDS.items()})

def decode_windows_keys(raw: str, memo: MalformedKeyMemo, now: datetime | None = None) -> tuple[WindowsKey, ...]:
    keys: list[WindowsKey] = []
    for line in raw.split("\n"):
        if not line.strip():
            # blank lines are skipped, not reported as malformed keys
            continue
        try:
            candidate = decode_key_line(line)
        except (ValueError, RecursionError) as exc:
            memo.report_once(line, exc)
            continue
        if accept_key(candidate, now):
            keys.append(candidate)
    return tuple(keys)

def decode_attributes(obj: dict[str, Any], memo: MalformedKeyMemo, now: datetime | None = None,
                      where: str = "attributes") -> Attributes:
    flags = {attr: _string(obj, wire, where) for attr, wire in _FLAG_FIELDS.items()}
    texts = {attr: _string(obj, wire, where) for attr, wire in _TEXT_FIELDS.items()}
    raw_keys = _string(obj, "windows-keys", where)

    return Attributes(
        **{attr: parse_bool(raw) for attr, raw in flags.items()},
        **texts,
        windows_keys=decode_windows_keys(raw_keys, memo, now),
    )

def _decode_interface(obj: Any, where: str) -> NetworkInterface:
    if obj is None:
        return NetworkInterface()
    if not isinstance(obj, dict):
        raise DecodeError(f"{where}: expected object, got {type(obj).__name__}")
    return NetworkInterface(
        mac=_string(obj, "mac", where),
        forwarded_ips=_strings(obj, "forwardedIps", where),
        target_instance_ips=_strings(obj, "targetInstanceIps", where),
    )

def decode_snapshot(body: bytes | str, memo: MalformedKeyMemo, now: datetime | None = None) -> Snapshot:
    """
    Decode a `?recursive=true&alt=json` response body.

    Any structural problem in the envelope raises DecodeError and nothing is
    returned. Broken windows-keys lines are the exception: they are reported
    through `memo` and skipped.
    """
    try:
        doc = json.loads(body)
    except (ValueError, RecursionError) as exc:
        raise DecodeError(f"invalid metadata JSON: {exc}") from exc
    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise DecodeError(f"metadata: expected object, got {type(doc).__name__}")

    inst = _object(doc, "instance", "metadata")
    proj = _object(doc, "project", "metadata")

    interfaces = tuple(
        _decode_interface(item, f"instance.networkInterfaces[{i}]")
        for i, item in enumerate(_list(inst, "networkInterfaces", "instance"))
    )
    instance = InstanceSection(
        attributes=decode_attributes(_object(inst, "attributes", "instance"), memo, now, "instance.attributes"),
        network_interfaces=interfaces,
    )
    project = ProjectSection(
        attributes=decode_attributes(_object(proj, "attributes", "project"), memo, now, "project.attributes"),
        project_id=_string(proj, "projectId", "project"),
    )
    return Snapshot(instance=instance, project=project)
