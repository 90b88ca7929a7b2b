# app/processor/factory.py
from __future__ import annotations

from typing import Any, Dict, Optional

from settings import settings

_PROCESSOR_CACHE: Dict[str, Any] = {}


def get_processor(mode: Optional[str] = None):
    key = (mode or settings.PROCESSOR_MODE or "mock").strip().lower()

    if key in _PROCESSOR_CACHE:
        return _PROCESSOR_CACHE[key]

    if key == "stripe":
        from app.processor.stripe import StripeProcessor
        processor = StripeProcessor()

    elif key == "mock":
        from app.processor.mock import MockProcessor
        processor = MockProcessor()

    else:
        raise RuntimeError(f"Unknown PROCESSOR_MODE: {key}")

    _PROCESSOR_CACHE[key] = processor
    return processor


def set_processor(processor, mode: Optional[str] = None) -> None:
    key = (mode or settings.PROCESSOR_MODE or "mock").strip().lower()
    if processor is None:
        _PROCESSOR_CACHE.pop(key, None)
    else:
        _PROCESSOR_CACHE[key] = processor


def reset_processors() -> None:
    _PROCESSOR_CACHE.clear()
