from __future__ import annotations

import base64
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ContentKind = Literal["json", "text", "binary"]


class ResolvedContent(BaseModel):
    """A fetched payload, normalized by content type into a JSON-safe shape."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ContentKind
    content_type: str = ""
    source_url: str = ""
    document: Optional[Any] = None
    text: Optional[str] = None
    data_base64: Optional[str] = None

    @classmethod
    def from_document(
        cls, document: Any, *, content_type: str = "application/json", source_url: str = ""
    ) -> ResolvedContent:
        return cls(kind="json", content_type=content_type, source_url=source_url, document=document)

    @classmethod
    def from_text(cls, text: str, *, content_type: str = "text/plain", source_url: str = "") -> ResolvedContent:
        return cls(kind="text", content_type=content_type, source_url=source_url, text=text)

    @classmethod
    def from_bytes(cls, body: bytes, *, content_type: str, source_url: str = "") -> ResolvedContent:
        return cls(
            kind="binary",
            content_type=content_type,
            source_url=source_url,
            data_base64=base64.b64encode(body).decode("ascii"),
        )

    def body_bytes(self) -> bytes:
        if self.kind == "binary" and self.data_base64 is not None:
            return base64.b64decode(self.data_base64)
        if self.kind == "text" and self.text is not None:
            return self.text.encode("utf-8")
        return b""


class RecordMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    description: str = ""
    image: str = ""
    attributes: List[Dict[str, Any]] = Field(default_factory=list)
    external_url: Optional[str] = None
    error: bool = False
