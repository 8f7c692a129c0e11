import json
from datetime import datetime, timedelta, timezone

import pytest


@pytest.fixture
def anyio_backend():
    return "asyncio"


def key_line(user="bob", expires_in=timedelta(days=1), **overrides):
    fields = {
        "email": f"{user}@example.com",
        "expireOn": (datetime.now(timezone.utc) + expires_in).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "exponent": "AQAB",
        "modulus": "xyz",
        "userName": user,
        "hashFunction": "sha256",
    }
    fields.update(overrides)
    return json.dumps(fields)


@pytest.fixture
def make_key_line():
    return key_line
