"""
Desired-state extraction: pod annotation -> CaptureSpec.

The annotation value is the number of rotation files tcpdump keeps
(``-W``). Anything that is not a positive integer means "no capture",
exactly as if the annotation had been removed.
"""

from __future__ import annotations

import logging
from typing import Optional

from . import ANNOTATION_KEY
from .models import CaptureSpec, Workload

logger = logging.getLogger("podcapture.desired")


class InvalidSpec(ValueError):
    """Annotation value could not be turned into a CaptureSpec."""


def parse_capture_spec(value: str) -> CaptureSpec:
    """Parse an annotation value into a CaptureSpec.

    Args:
        value: Raw annotation string, e.g. ``"3"``.

    Returns:
        CaptureSpec with ``max_files`` set.

    Raises:
        InvalidSpec: If the value is not a positive base-10 integer.
    """
    text = value.strip()
    if not text.isdigit() or not text.isascii():
        raise InvalidSpec(f"annotation value {value!r} is not a positive integer")
    max_files = int(text)
    if max_files <= 0:
        raise InvalidSpec(f"annotation value {value!r} must be greater than zero")
    return CaptureSpec(max_files=max_files)


def extract(workload: Workload, annotation_key: str = ANNOTATION_KEY) -> Optional[CaptureSpec]:
    """Return the desired CaptureSpec for a workload, or None.

    A missing or empty annotation yields None silently. A malformed
    one is logged as an invalid spec and also yields None.
    """
    value = workload.annotations.get(annotation_key)
    if not value:
        return None
    try:
        return parse_capture_spec(value)
    except InvalidSpec as exc:
        logger.error(
            "Invalid annotation %s=%r on %s: %s",
            annotation_key, value, workload.identity, exc,
            extra={"lifecycle": "invalid-spec", "workload": str(workload.identity)},
        )
        return None
