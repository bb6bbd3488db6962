import re

_UUID_V4_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_uuid_v4(value: object) -> bool:
    return isinstance(value, str) and bool(_UUID_V4_RE.match(value))
