from __future__ import annotations

import pytest

from identity_bridge.domain.storage_id import (
    external_id,
    is_federated,
    parse_local_key,
    provider_of,
    qualify,
)


def test_qualify_builds_provider_tagged_id() -> None:
    assert qualify("bridge", 42) == "f:bridge:42"
    assert qualify("bridge", "7") == "f:bridge:7"


def test_qualify_rejects_tag_with_separator() -> None:
    with pytest.raises(ValueError):
        qualify("a:b", 1)
    with pytest.raises(ValueError):
        qualify("", 1)


def test_external_id_strips_prefix() -> None:
    assert external_id("f:bridge:42") == "42"
    assert external_id("f:bridge:42", "bridge") == "42"
    assert external_id("f:bridge:ext:with:colons") == "ext:with:colons"


def test_external_id_is_none_for_other_provider_or_raw_ids() -> None:
    assert external_id("f:other:42", "bridge") is None
    assert external_id("8c7d2f3e-raw-consumer-id") is None
    assert external_id("42") is None
    assert external_id("f:bridge:") is None
    assert external_id(None) is None


def test_federated_helpers() -> None:
    assert is_federated("f:bridge:1")
    assert not is_federated("f::1")
    assert not is_federated("g:bridge:1")
    assert provider_of("f:bridge:1") == "bridge"
    assert provider_of("plain") is None


def test_parse_local_key_treats_malformed_input_as_absent() -> None:
    assert parse_local_key("17") == 17
    assert parse_local_key(" 17 ") == 17
    assert parse_local_key(17) == 17
    assert parse_local_key("abc") is None
    assert parse_local_key("-3") is None
    assert parse_local_key("0") is None
    assert parse_local_key("1.5") is None
    assert parse_local_key("") is None
    assert parse_local_key(None) is None
    assert parse_local_key(True) is None
