"""Provider namespace prefixes on anime and episode ids.

A provider that owns a namespace tags every id it hands out as
``"<namespace>:<raw>"``. Ids without a known prefix belong to whichever
provider produced them; the composite catalog tries the primary catalog
first for those.
"""
from typing import Optional

SEPARATOR = ":"


def tag_id(namespace: Optional[str], raw: str) -> str:
    if not namespace or belongs_to(raw, namespace):
        return raw
    return f"{namespace}{SEPARATOR}{raw}"


def belongs_to(value: str, namespace: Optional[str]) -> bool:
    if not value or not namespace:
        return False
    return value.lower().startswith(namespace.lower() + SEPARATOR)


def strip_namespace(value: str, namespace: Optional[str]) -> str:
    if belongs_to(value, namespace):
        return value[len(namespace) + len(SEPARATOR):]
    return value
