"""Translation between consumer ids and local integer keys.

A consumer id minted for a locally-originated entity has the form
``f:<provider id>:<local key>``. Any other string is an opaque id the
consumer minted on its own and is matched against the stored
``consumer_id`` column instead.
"""

from __future__ import annotations

FEDERATED_PREFIX = "f"
SEPARATOR = ":"


def is_federated(consumer_id: str | None) -> bool:
    if not consumer_id:
        return False
    parts = consumer_id.split(SEPARATOR, 2)
    return len(parts) == 3 and parts[0] == FEDERATED_PREFIX and bool(parts[1])


def provider_of(consumer_id: str | None) -> str | None:
    if consumer_id is None or not is_federated(consumer_id):
        return None
    return consumer_id.split(SEPARATOR, 2)[1]


def external_id(consumer_id: str | None, provider_id: str | None = None) -> str | None:
    """Strip the provider tag from ``consumer_id``.

    Returns ``None`` when the id is not provider-qualified, or when
    ``provider_id`` is given and the id belongs to another provider. ``None``
    means "interpret the argument as a raw consumer id instead".
    """
    if consumer_id is None or not is_federated(consumer_id):
        return None
    _, tag, local = consumer_id.split(SEPARATOR, 2)
    if provider_id is not None and tag != provider_id:
        return None
    return local or None


def qualify(provider_id: str, local_key: int | str) -> str:
    if not provider_id or SEPARATOR in provider_id:
        raise ValueError(f"invalid provider id: {provider_id!r}")
    return f"{FEDERATED_PREFIX}{SEPARATOR}{provider_id}{SEPARATOR}{local_key}"


def parse_local_key(value: int | str | None) -> int | None:
    """Decimal local key or ``None`` for anything that is not one."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    text = value.strip()
    if not text.isdecimal() or not text.isascii():
        return None
    key = int(text)
    return key if key > 0 else None
