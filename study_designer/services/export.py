"""Decoding of the $export-datamart result into a downloadable CSV."""

from __future__ import annotations

import base64
import binascii
from typing import Any

from study_designer.errors import ServiceError

CSV_MEDIA_TYPE = "text/csv"


def datamart_filename(study_id: str) -> str:
    return f"datamart_{study_id}.csv"


def decode_datamart_csv(response: dict[str, Any]) -> bytes:
    """Decode the base64 ``data`` of the Binary returned by $export-datamart."""
    data = response.get("data")
    if not data:
        raise ServiceError("Datamart export returned no data")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ServiceError(f"Datamart export is not valid base64: {exc}") from exc
