"""Write the release version into the project manifest."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from .exceptions import ManifestShapeError
from .models import SemVer

LOGGER = logging.getLogger(__name__)

# One canonical ``version = "x.y.z"`` line, anchored at column 0 so that
# inline dependency tables (``foo = { version = "1" }``) never match.
VERSION_LINE_RE = re.compile(
    r'^(?P<prefix>version[ \t]*=[ \t]*)"(?P<value>[^"\r\n]*)"(?P<suffix>[ \t]*(?:#[^\r\n]*)?)(?=\r?$)',
    re.MULTILINE,
)


def _single_match(text: str) -> re.Match[str]:
    matches = list(VERSION_LINE_RE.finditer(text))
    if len(matches) != 1:
        raise ManifestShapeError(
            f"Expected exactly one version declaration, found {len(matches)}",
            matches=len(matches),
        )
    return matches[0]


def read_version_text(text: str) -> str:
    """Return the raw value of the single version declaration.

    Any value is accepted (``1.3.0-dev`` included); only the number of
    declarations is checked.
    """

    return _single_match(text).group("value")


def read_version(text: str) -> SemVer:
    """Return the version declared in ``text`` as a ``SemVer``."""

    value = read_version_text(text)
    try:
        return SemVer.parse(value)
    except ValueError as exc:
        raise ManifestShapeError(
            f"Version declaration {value!r} is not X.Y.Z", matches=1, context={"value": value}
        ) from exc


def write_version(text: str, version: SemVer) -> str:
    """Return ``text`` with the single version declaration set to ``version``.

    Every byte outside the quoted value is preserved, including line endings
    and a trailing comment. Raises ``ManifestShapeError`` when zero or several
    declarations are present.
    """

    match = _single_match(text)
    start, end = match.span("value")
    return text[:start] + str(version) + text[end:]


def update_manifest_file(path: Path, version: SemVer) -> str:
    """Rewrite the manifest at ``path`` in place and return the new text.

    The file is left untouched when the manifest is not in the expected shape.
    """

    # newline="" keeps CRLF manifests byte-identical outside the version value
    with path.open("r", encoding="utf-8", newline="") as handle:
        original = handle.read()
    updated = write_version(original, version)
    if updated != original:
        with path.open("w", encoding="utf-8", newline="") as handle:
            handle.write(updated)
    LOGGER.info("Set version %s in %s", version, path)
    return updated


__all__ = ["VERSION_LINE_RE", "read_version", "read_version_text", "write_version", "update_manifest_file"]
