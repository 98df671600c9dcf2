"""ID map builder: stable short keys for remote container IDs.

Objective:
    Convert a :class:`~src.taxonomy_provisioner.models.ProvisioningResult`
    into the ``friendlyKey -> remoteId`` map consumed by the external workflow
    engine, and merge it into the map persisted for the user.

Key format:
    - The category contributes its first four alphanumeric characters
      (``BANKING`` -> ``BANK``).
    - Each deeper segment contributes an abbreviation of its last word: words
      of up to four characters are kept whole, longer words keep their first
      letter plus following consonants up to four characters
      (``Receipts`` -> ``RCPT``, ``Payment Sent`` -> ``SENT``).
    - Segments are joined with ``_``: ``BANKING/Receipts/Payment Sent`` ->
      ``BANK_RCPT_SENT``.
    - Keys that collide get ``_2``, ``_3``... in path order, so the same set
      of paths always yields the same keys.

High-level call tree:
    - :func:`build_id_map`
        - :func:`friendly_key`
            - :func:`abbreviate_segment`
    - :func:`merge_label_map`
    - :func:`expected_folders_from_result` / :func:`merge_expected_folders`
"""

import logging
import re
from typing import Iterable, Optional

from .models import ExpectedFolder, ProvisionedEntry, ProvisioningResult

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^A-Za-z0-9\s]")
_VOWELS = set("AEIOU")
SEGMENT_LENGTH = 4


def _words(segment: str) -> list[str]:
    return [w for w in _NON_ALNUM.sub("", segment).split() if w]


def abbreviate_segment(segment: str, primary: bool = False) -> str:
    """
    Abbreviate one path segment.

    Args:
        segment: Raw segment (``"Payment Sent"``).
        primary: True for the top-level category.

    Returns:
        str: Upper-case abbreviation (may be empty for symbol-only input).
    """
    words = _words(segment)
    if not words:
        return ""

    if primary:
        return "".join(words).upper()[:SEGMENT_LENGTH]

    word = words[-1].upper()
    if len(word) <= SEGMENT_LENGTH:
        return word

    letters = [word[0]]
    for char in word[1:]:
        if len(letters) == SEGMENT_LENGTH:
            break
        if char not in _VOWELS:
            letters.append(char)
    return "".join(letters)


def friendly_key(path: str) -> str:
    """
    Derive the friendly key for a ``/``-delimited path.

    Args:
        path: Container path (``"BANKING/Receipts/Payment Sent"``).

    Returns:
        str: Friendly key (``"BANK_RCPT_SENT"``).
    """
    parts = [p.strip() for p in path.split("/") if p.strip()]
    pieces = [
        abbreviate_segment(part, primary=(i == 0)) for i, part in enumerate(parts)
    ]
    key = "_".join(piece for piece in pieces if piece)
    return key or "LABEL"


def build_id_map(result: ProvisioningResult) -> dict[str, str]:
    """
    Build the friendly-key map for every created or matched container.

    Args:
        result: Reconciliation result.

    Returns:
        dict[str, str]: ``friendlyKey -> remoteId``.
    """
    entries: dict[str, ProvisionedEntry] = {}
    for entry in result.entries():
        entries.setdefault(entry.path.lower(), entry)

    id_map: dict[str, str] = {}
    for _, entry in sorted(entries.items()):
        base = friendly_key(entry.path)
        key = base
        suffix = 2
        while key in id_map:
            key = f"{base}_{suffix}"
            suffix += 1
        id_map[key] = entry.remote_id

    logger.debug(f"Built ID map with {len(id_map)} keys")
    return id_map


def merge_label_map(existing: Optional[dict[str, str]], new: dict[str, str]) -> dict[str, str]:
    """
    Merge a freshly built map into the persisted one.

    Keys present only in ``existing`` survive; keys in ``new`` win.

    Args:
        existing: Persisted map (None when absent).
        new: Map built from the latest run.

    Returns:
        dict[str, str]: Merged map.
    """
    merged = dict(existing or {})
    merged.update(new)
    return merged


def expected_folders_from_result(result: ProvisioningResult) -> list[ExpectedFolder]:
    """Return the expected-folder records for every resolved container."""
    return [ExpectedFolder(path=entry.path, remote_id=entry.remote_id) for entry in result.entries()]


def merge_expected_folders(
    existing: Iterable[ExpectedFolder], new: Iterable[ExpectedFolder]
) -> list[ExpectedFolder]:
    """Merge expected folders by path (case-insensitive); newer IDs win."""
    merged: dict[str, ExpectedFolder] = {}
    for folder in [*existing, *new]:
        key = folder.path.lower()
        previous = merged.get(key)
        if previous is None or folder.remote_id:
            merged[key] = folder
    return list(merged.values())
