import json
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from metadata_client.decoder import (
    MalformedKeyMemo, accept_key, decode_attributes, decode_snapshot, decode_windows_keys, parse_bool,
)
from metadata_client.errors import DecodeError
from metadata_client.models import Attributes, NetworkInterface, WindowsKey


def bad_key_records(caplog):
    return [r for r in caplog.records if getattr(r, "event", None) == "decode.bad_key"]


@pytest.mark.parametrize("raw,expected", [
    ("true", True), ("True", True), ("1", True), ("t", True),
    ("false", False), ("FALSE", False), ("0", False),
    ("", None), ("yes", None), ("tru", None),
])
def test_parse_bool(raw, expected):
    assert parse_bool(raw) is expected


def test_flags_are_tri_state(caplog):
    attrs = decode_attributes(
        {"disable-address-manager": "true", "disable-account-manager": "false", "enable-diagnostics": "maybe"},
        MalformedKeyMemo(),
    )
    assert attrs.disable_address_manager is True
    assert attrs.disable_account_manager is False
    assert attrs.enable_diagnostics is None
    assert attrs.enable_wsfc is None
    assert caplog.records == []


def test_plain_string_attributes():
    attrs = decode_attributes(
        {"diagnostics": "{\"signedUrl\":\"x\"}", "wsfc-addrs": "10.0.0.5,10.0.0.6", "wsfc-agent-port": "59998"},
        MalformedKeyMemo(),
    )
    assert attrs.diagnostics == "{\"signedUrl\":\"x\"}"
    assert attrs.wsfc_addresses == "10.0.0.5,10.0.0.6"
    assert attrs.wsfc_agent_port == "59998"


def test_empty_attributes_decode_to_defaults():
    assert decode_attributes({}, MalformedKeyMemo()) == Attributes()


def test_non_string_flag_is_structural_error():
    with pytest.raises(DecodeError):
        decode_attributes({"enable-wsfc": True}, MalformedKeyMemo())


def test_example_payload_with_future_and_past_expiry(make_key_line):
    memo = MalformedKeyMemo()
    future = {"disable-address-manager": "true", "windows-keys": make_key_line("bob", timedelta(days=1))}
    attrs = decode_attributes(future, memo)
    assert attrs.disable_address_manager is True
    assert [k.user_name for k in attrs.windows_keys] == ["bob"]

    past = dict(future, **{"windows-keys": make_key_line("bob", timedelta(days=-1))})
    assert decode_attributes(past, memo).windows_keys == ()


def test_keys_keep_order_and_skip_malformed_lines(make_key_line, caplog):
    raw = "\n".join([
        make_key_line("alice"),
        "{not json",
        make_key_line("bob"),
        "[1, 2]",
        make_key_line("carol"),
    ])
    memo = MalformedKeyMemo()
    with caplog.at_level(logging.ERROR):
        keys = decode_windows_keys(raw, memo)
    assert [k.user_name for k in keys] == ["alice", "bob", "carol"]
    assert len(bad_key_records(caplog)) == 2
    assert len(memo) == 2


def test_malformed_line_reported_once_across_decodes(make_key_line, caplog):
    raw = make_key_line("alice") + "\n{broken"
    memo = MalformedKeyMemo()
    with caplog.at_level(logging.ERROR):
        for _ in range(3):
            decode_windows_keys(raw, memo)
        decode_windows_keys("{broken again", memo)
    assert len(bad_key_records(caplog)) == 2
    assert "{broken" in memo


def test_separate_memos_report_independently(caplog):
    with caplog.at_level(logging.ERROR):
        decode_windows_keys("{broken", MalformedKeyMemo())
        decode_windows_keys("{broken", MalformedKeyMemo())
    assert len(bad_key_records(caplog)) == 2


def test_blank_lines_are_ignored(make_key_line, caplog):
    keys = decode_windows_keys(make_key_line("alice") + "\n\n", MalformedKeyMemo())
    assert len(keys) == 1
    assert bad_key_records(caplog) == []


def test_invalid_keys_dropped_silently(make_key_line, caplog):
    raw = "\n".join([
        make_key_line("alice", exponent=""),
        make_key_line("bob", modulus=""),
        make_key_line("", email="x@example.com"),
        "null",
    ])
    assert decode_windows_keys(raw, MalformedKeyMemo()) == ()
    assert caplog.records == []


def test_key_fields_match_case_and_hyphen_insensitively():
    line = json.dumps({"Exponent": "AQAB", "MODULUS": "m", "user-name": "dave", "expire-on": "", "hash-function": "sha1"})
    (key,) = decode_windows_keys(line, MalformedKeyMemo())
    assert key == WindowsKey(expire_on="", exponent="AQAB", modulus="m", user_name="dave", hash_function="sha1")


def test_accept_key_expiry():
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    base = WindowsKey(exponent="AQAB", modulus="m", user_name="u")
    assert accept_key(replace(base, expire_on="2024-07-01T00:00:00Z"), now)
    assert accept_key(replace(base, expire_on="2024-07-01T00:00:00.123+02:00"), now)
    assert not accept_key(replace(base, expire_on="2024-05-01T00:00:00Z"), now)


@pytest.mark.parametrize("expiry", ["", "next tuesday", "2024-05-01T00:00:00"])
def test_unparsable_expiry_counts_as_not_expired(expiry):
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    assert accept_key(WindowsKey(expire_on=expiry, exponent="AQAB", modulus="m", user_name="u"), now)


def test_decode_snapshot_envelope(make_key_line):
    body = json.dumps({
        "instance": {
            "attributes": {"enable-wsfc": "true", "windows-keys": make_key_line("bob")},
            "networkInterfaces": [
                {"mac": "42:01:0a:80:00:02", "forwardedIps": ["10.1.2.3"], "targetInstanceIps": []},
                {"mac": "42:01:0a:80:00:03"},
            ],
            "hostname": "ignored.example.internal",
        },
        "project": {"attributes": {"enable-diagnostics": "false"}, "projectId": "my-project"},
    }).encode()

    snap = decode_snapshot(body, MalformedKeyMemo())

    assert snap.instance.attributes.enable_wsfc is True
    assert [k.user_name for k in snap.instance.attributes.windows_keys] == ["bob"]
    assert snap.instance.network_interfaces == (
        NetworkInterface(mac="42:01:0a:80:00:02", forwarded_ips=("10.1.2.3",)),
        NetworkInterface(mac="42:01:0a:80:00:03"),
    )
    assert snap.project.project_id == "my-project"
    assert snap.project.attributes.enable_diagnostics is False


def test_decode_snapshot_missing_sections():
    snap = decode_snapshot(b"{}", MalformedKeyMemo())
    assert snap.instance.network_interfaces == ()
    assert snap.project.project_id == ""
    assert snap.project.attributes == Attributes()


@pytest.mark.parametrize("body", [
    b"not json",
    b"[]",
    json.dumps({"instance": []}).encode(),
    json.dumps({"instance": {"networkInterfaces": {}}}).encode(),
    json.dumps({"instance": {"networkInterfaces": [{"forwardedIps": [1]}]}}).encode(),
    json.dumps({"project": {"projectId": 42}}).encode(),
    json.dumps({"project": {"attributes": {"windows-keys": ["a"]}}}).encode(),
])
def test_structural_errors_fail_whole_decode(body):
    with pytest.raises(DecodeError):
        decode_snapshot(body, MalformedKeyMemo())


def test_snapshot_is_immutable():
    snap = decode_snapshot(b"{}", MalformedKeyMemo())
    with pytest.raises(AttributeError):
        snap.project = None


def test_deeply_nested_key_line_is_skipped(make_key_line, caplog):
    raw = "\n".join([make_key_line("alice"), "[" * 100000, make_key_line("bob")])
    memo = MalformedKeyMemo()
    with caplog.at_level(logging.ERROR):
        keys = decode_windows_keys(raw, memo)
    assert [k.user_name for k in keys] == ["alice", "bob"]
    assert len(bad_key_records(caplog)) == 1
    assert "[" * 100000 in memo


def test_deeply_nested_body_raises_decode_error():
    with pytest.raises(DecodeError):
        decode_snapshot(b"[" * 100000, MalformedKeyMemo())
