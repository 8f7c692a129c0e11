import copy
import hashlib
import json
import random
from datetime import datetime, timedelta, timezone
from typing import Any

Document = dict[str, Any]

def _fmt_mac(i: int) -> str:
    return f"42:01:0a:80:00:{i:02x}"

def make_windows_key(user: str, expires_in: timedelta, *, email: str | None = None) -> str:
    """One windows-keys line as the guest agent writes it."""
    expire_on = (datetime.now(timezone.utc) + expires_in).strftime("%Y-%m-%dT%H:%M:%SZ")
    return json.dumps({
        "email": email or f"{user}@example.com",
        "expireOn": expire_on,
        "exponent": "AQAB",
        "modulus": "".join(random.choice("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/") for _ in range(64)),
        "userName": user,
        "hashFunction": "sha256",
    })

def default_document(n_interfaces: int = 1, project_id: str = "emulated-project") -> Document:
    """
    Build a recursive metadata document shaped like the real service's:
      - instance attributes with string flags and a single windows key
      - `n_interfaces` network interfaces with no forwarded IPs
      - project attributes with diagnostics disabled
    """
    return {
        "instance": {
            "attributes": {
                "enable-wsfc": "false",
                "windows-keys": make_windows_key("admin", timedelta(hours=1)),
            },
            "networkInterfaces": [
                {"mac": _fmt_mac(i), "forwardedIps": [], "targetInstanceIps": []}
                for i in range(n_interfaces)
            ],
        },
        "project": {
            "attributes": {"enable-diagnostics": "false"},
            "projectId": project_id,
        },
    }

def compute_etag(doc: Document) -> str:
    raw = json.dumps(doc, sort_keys=True, separators=(",", ":")).encode()
    return hashlib.sha1(raw).hexdigest()[:16]

def set_attribute(doc: Document, section: str, key: str, value: str | None) -> Document:
    """Return a copy of `doc` with one raw attribute set, or removed when `value` is None."""
    if section not in ("instance", "project"):
        raise KeyError(section)
    out = copy.deepcopy(doc)
    attrs = out.setdefault(section, {}).setdefault("attributes", {})
    if value is None:
        attrs.pop(key, None)
    else:
        attrs[key] = value
    return out
