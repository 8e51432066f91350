from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import unquote_to_bytes

from ledger_scout.content.fetcher import FetchResponse
from ledger_scout.content.models import RecordMetadata, ResolvedContent
from ledger_scout.errors import MalformedIdentifier

logger = logging.getLogger(__name__)

_NAME_KEYS = ("name", "title")
_DESCRIPTION_KEYS = ("description", "desc")
_IMAGE_KEYS = ("image", "image_url", "imageUrl", "image_uri", "imageURI")
_ATTRIBUTE_KEYS = ("attributes", "traits", "properties")
_EXTERNAL_URL_KEYS = ("external_url", "externalUrl")

_TEXT_TYPES = ("text/", "application/xml", "application/javascript")


def _media_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


def _is_json_type(media_type: str) -> bool:
    return media_type == "application/json" or media_type.endswith("+json")


def content_from_bytes(body: bytes, content_type: str, *, source_url: str = "") -> ResolvedContent:
    """
    Normalize a raw body by its declared content type.

    JSON types must parse. Text bodies that look like JSON are parsed as well,
    since gateways often serve metadata files as text/plain.
    Raises ValueError when a declared JSON body is invalid.
    """
    media_type = _media_type(content_type)
    if _is_json_type(media_type):
        return ResolvedContent.from_document(
            json.loads(body.decode("utf-8")), content_type=content_type, source_url=source_url
        )

    if not media_type or media_type.startswith(_TEXT_TYPES):
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError:
            return ResolvedContent.from_bytes(
                body, content_type=content_type or "application/octet-stream", source_url=source_url
            )
        stripped = text.lstrip()
        if stripped.startswith(("{", "[")):
            try:
                return ResolvedContent.from_document(
                    json.loads(text), content_type=content_type or "application/json", source_url=source_url
                )
            except json.JSONDecodeError:
                pass
        return ResolvedContent.from_text(text, content_type=content_type or "text/plain", source_url=source_url)

    return ResolvedContent.from_bytes(body, content_type=content_type, source_url=source_url)


def content_from_response(response: FetchResponse) -> ResolvedContent:
    return content_from_bytes(response.body, response.content_type, source_url=response.url)


def decode_data_uri(uri: str) -> ResolvedContent:
    """Decode `data:[<media type>][;base64],<data>` without touching the network."""
    if not uri.startswith("data:") or "," not in uri:
        raise MalformedIdentifier(uri[:64], "not a data URI")
    header, _, payload = uri[len("data:") :].partition(",")
    params = [p.strip() for p in header.split(";") if p.strip()]
    is_base64 = bool(params) and params[-1].lower() == "base64"
    if is_base64:
        params = params[:-1]
    content_type = ";".join(params) if params else "text/plain;charset=US-ASCII"
    try:
        body = base64.b64decode(payload, validate=True) if is_base64 else unquote_to_bytes(payload)
        return content_from_bytes(body, content_type)
    except (binascii.Error, ValueError) as e:
        raise MalformedIdentifier(uri[:64], f"undecodable data URI: {e}") from e


def _first(document: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = document.get(key)
        if value not in (None, ""):
            return value
    return None


def _normalize_attributes(raw: Any) -> List[Dict[str, Any]]:
    if isinstance(raw, list):
        attributes = []
        for item in raw:
            if isinstance(item, dict):
                attributes.append(dict(item))
            elif item is not None:
                attributes.append({"value": item})
        return attributes
    if isinstance(raw, dict):
        return [{"trait_type": str(key), "value": value} for key, value in raw.items()]
    return []


def normalize_metadata(
    document: Any,
    *,
    fallback_name: str,
    placeholder_image: str,
    to_http_url: Optional[Callable[[str], str]] = None,
) -> RecordMetadata:
    """Map metadata documents with varying field names onto RecordMetadata."""
    if not isinstance(document, Mapping):
        logger.debug("Metadata document is not a mapping. type=%s", type(document).__name__)
        return RecordMetadata(name=fallback_name, image=placeholder_image, error=True)

    name = _first(document, _NAME_KEYS)
    description = _first(document, _DESCRIPTION_KEYS)
    image = _first(document, _IMAGE_KEYS)
    external_url = _first(document, _EXTERNAL_URL_KEYS)

    image_url = placeholder_image
    if isinstance(image, str) and image.strip():
        image_url = image.strip()
        if to_http_url is not None and not image_url.startswith("data:"):
            image_url = to_http_url(image_url)

    return RecordMetadata(
        name=str(name) if name is not None else fallback_name,
        description=str(description) if description is not None else "",
        image=image_url,
        attributes=_normalize_attributes(_first(document, _ATTRIBUTE_KEYS)),
        external_url=str(external_url) if external_url is not None else None,
        error=bool(document.get("error", False)),
    )
