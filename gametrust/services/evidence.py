"""Evidence references: validation and display metadata."""
from __future__ import annotations

import mimetypes
import posixpath
from typing import Iterable, Protocol
from urllib.parse import unquote, urlparse

from gametrust.schemas.dispute import EvidenceMetadata
from gametrust.utils.errors import ValidationError


class EvidenceStore(Protocol):
    def resolve(self, ref: str) -> EvidenceMetadata: ...


class UrlEvidenceStore:
    """Derive metadata from the reference URL alone. Nothing is fetched."""

    def resolve(self, ref: str) -> EvidenceMetadata:
        parsed = urlparse(ref)
        filename = posixpath.basename(unquote(parsed.path)) or None
        media_type = mimetypes.guess_type(filename)[0] if filename else None
        return EvidenceMetadata(ref=ref, host=parsed.hostname or "", filename=filename, media_type=media_type)


_store: EvidenceStore = UrlEvidenceStore()


def get_evidence_store() -> EvidenceStore:
    return _store


def validate_refs(refs: Iterable[str]) -> list[str]:
    """Return cleaned references, rejecting anything that is not an absolute http(s) URL."""

    cleaned: list[str] = []
    for raw in refs:
        ref = (raw or "").strip()
        parsed = urlparse(ref)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValidationError(
                "Evidence references must be http(s) URLs.", code="INVALID_EVIDENCE_REF", details={"ref": ref}
            )
        cleaned.append(ref)
    return cleaned


__all__ = ["EvidenceStore", "UrlEvidenceStore", "get_evidence_store", "validate_refs"]
