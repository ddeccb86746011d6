from __future__ import annotations

import re
from typing import Any, Mapping

from pgext_image_build.core import MetadataError
from pgext_image_build.definition.models import ASSEMBLER_NAME

_LABEL_KEY_RE = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*$")
_PRIVILEGED_USERS = {"root", "0"}


def _fail(msg: str, step: str) -> MetadataError:
    return MetadataError(msg, stage=ASSEMBLER_NAME, step=step)


def validate_user(user: str, *, step: str = "finalize") -> str:
    """
    The image must run as a fixed unprivileged identity: a name other than
    root or a uid above zero, optionally with `:group`.
    """
    u = user.strip()
    if not u or any(c.isspace() for c in u):
        raise _fail(f"malformed user {user!r}", step)
    name, _, group = u.partition(":")
    if not name or (":" in u and not group):
        raise _fail(f"malformed user {user!r}", step)
    if name in _PRIVILEGED_USERS:
        raise _fail(f"image must not run as privileged user {name!r}", step)
    if name.isdigit() and int(name) == 0:
        raise _fail(f"image must not run as uid {name}", step)
    if name.startswith("-"):
        raise _fail(f"malformed user {user!r}", step)
    return u


def validate_labels(labels: Mapping[str, str], *, step: str = "finalize") -> dict[str, str]:
    out: dict[str, str] = {}
    for key in sorted(labels):
        value = labels[key]
        if not _LABEL_KEY_RE.match(key):
            raise _fail(f"malformed label key {key!r}", step)
        if not isinstance(value, str) or not value.strip():
            raise _fail(f"label {key} is empty", step)
        if "\n" in value or "\r" in value:
            raise _fail(f"label {key} spans multiple lines", step)
        if "${" in value:
            raise _fail(f"label {key} has an unresolved placeholder: {value!r}", step)
        out[key] = value
    return out


def finalize_metadata(
    *, base: str, user: str, labels: Mapping[str, str]
) -> dict[str, Any]:
    """
    Image config in OCI terms. Same inputs, same output.
    """
    return {
        "base": base,
        "config": {
            "User": validate_user(user),
            "Labels": validate_labels(labels),
        },
    }
