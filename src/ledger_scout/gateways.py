from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal, Optional, Sequence, Tuple

from ledger_scout.errors import MalformedIdentifier

logger = logging.getLogger(__name__)

IdentifierKind = Literal["content_hash", "url", "data"]

CONTENT_PATH_PLACEHOLDER = "{cid}"

_CID_V0 = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")
_CID_V1 = re.compile(r"^baf[a-z2-7]{50,}$")
_GATEWAY_PATH = re.compile(r"/ipfs/([A-Za-z0-9]+)(/[^?#]*)?")


@dataclass(frozen=True, slots=True)
class ParsedIdentifier:
    raw: str
    kind: IdentifierKind
    content_path: Optional[str] = None
    url: Optional[str] = None

    @property
    def content_hash(self) -> Optional[str]:
        if not self.content_path:
            return None
        return self.content_path.split("/", 1)[0]


@dataclass(frozen=True, slots=True)
class GatewayCandidate:
    identifier: str
    index: int
    url: str
    probe: bool = False


def is_content_hash(value: str) -> bool:
    return bool(_CID_V0.match(value) or _CID_V1.match(value))


def parse_identifier(identifier: str) -> ParsedIdentifier:
    """
    Classify an identifier and pull out its content path when it has one.

    Recognized forms: a bare CIDv0/CIDv1 (optionally followed by a path),
    `ipfs://<cid>[/path]`, any http(s) URL carrying `/ipfs/<cid>[/path]`
    (including malformed double-gateway URLs), plain http(s) URLs and data URIs.
    """
    raw = (identifier or "").strip()
    if not raw:
        raise MalformedIdentifier(identifier or "", "empty identifier")

    if raw.startswith("data:"):
        return ParsedIdentifier(raw=raw, kind="data")

    if raw.startswith("ipfs://"):
        path = raw[len("ipfs://") :].lstrip("/")
        if path.startswith("ipfs/"):
            path = path[len("ipfs/") :]
        if not path or not is_content_hash(path.split("/", 1)[0]):
            raise MalformedIdentifier(raw, "ipfs:// URI without a content hash")
        return ParsedIdentifier(raw=raw, kind="content_hash", content_path=path)

    if raw.startswith(("http://", "https://")):
        # The last /ipfs/ segment wins so double-gateway URLs resolve to the inner hash.
        matches = list(_GATEWAY_PATH.finditer(raw))
        for match in reversed(matches):
            cid = match.group(1)
            if is_content_hash(cid):
                return ParsedIdentifier(
                    raw=raw,
                    kind="url",
                    content_path=cid + (match.group(2) or ""),
                    url=raw,
                )
        return ParsedIdentifier(raw=raw, kind="url", url=raw)

    head = raw.split("/", 1)[0]
    if is_content_hash(head):
        return ParsedIdentifier(raw=raw, kind="content_hash", content_path=raw)

    raise MalformedIdentifier(raw, "not a URL, content hash or data URI")


class GatewayResolver:
    """
    Maps an identifier onto an ordered list of fetchable URLs.

    Index 0 is the most preferred candidate. For an http(s) identifier that is
    the URL itself, tried with an existence probe first; the mirror templates
    follow when the URL embeds a content hash. Content-hash identifiers start
    directly at the first mirror. An index past the last candidate means the
    chain is exhausted.
    """

    def __init__(self, templates: Sequence[str], *, probe_direct_urls: bool = True) -> None:
        cleaned = tuple(t.strip() for t in templates if t and t.strip())
        if not cleaned:
            raise ValueError("At least one gateway template is required.")
        self._templates: Tuple[str, ...] = cleaned
        self._probe_direct_urls = probe_direct_urls

    @property
    def templates(self) -> Tuple[str, ...]:
        return self._templates

    def candidates(self, identifier: str) -> Tuple[GatewayCandidate, ...]:
        parsed = parse_identifier(identifier)
        if parsed.kind == "data":
            raise MalformedIdentifier(identifier, "data URIs are decoded inline, not fetched")

        result = []
        if parsed.kind == "url" and parsed.url:
            result.append(
                GatewayCandidate(identifier=identifier, index=0, url=parsed.url, probe=self._probe_direct_urls)
            )
        if parsed.content_path:
            for template in self._templates:
                url = self.materialize(template, parsed.content_path)
                result.append(GatewayCandidate(identifier=identifier, index=len(result), url=url))
        return tuple(result)

    def resolve(self, identifier: str, index: int = 0) -> GatewayCandidate:
        candidate = self.next_candidate(identifier, index)
        if candidate is None:
            raise MalformedIdentifier(identifier, f"no gateway candidate at index {index}")
        return candidate

    def next_candidate(self, identifier: str, index: int) -> Optional[GatewayCandidate]:
        """Return the candidate at `index`, or None once the chain is exhausted."""
        if index < 0:
            raise ValueError(f"Gateway index must be non-negative, got {index}")
        candidates = self.candidates(identifier)
        if index >= len(candidates):
            return None
        return candidates[index]

    def to_http_url(self, identifier: str) -> str:
        """Preferred fetchable URL for an identifier, or the identifier itself if it has none."""
        try:
            parsed = parse_identifier(identifier)
        except MalformedIdentifier:
            return identifier
        if parsed.kind == "content_hash" and parsed.content_path:
            return self.materialize(self._templates[0], parsed.content_path)
        return parsed.raw

    @staticmethod
    def materialize(template: str, content_path: str) -> str:
        if CONTENT_PATH_PLACEHOLDER in template:
            return template.replace(CONTENT_PATH_PLACEHOLDER, content_path)
        return template.rstrip("/") + "/" + content_path
