from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict

from app.i18n.codes import ErrorCode

logger = logging.getLogger("app.i18n")

DEFAULT_LOCALE = "en"
SUPPORTED_LOCALES = frozenset({"en", "zh"})

_LOCALE_DIR = Path(__file__).resolve().parents[1] / "i18n"


@lru_cache(maxsize=len(SUPPORTED_LOCALES))
def _load_locale_messages(locale: str) -> Dict[int, str]:
    if locale not in SUPPORTED_LOCALES:
        return {}
    path = _LOCALE_DIR / f"{locale}.json"
    if not path.exists():
        logger.warning("locale file missing: %s", path)
        return {}
    data: object = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        return {}
    return {
        int(key): value
        for key, value in data.items()
        if isinstance(key, str) and key.isdigit() and isinstance(value, str)
    }


def resolve_locale(accept_language: str | None) -> str:
    if not accept_language:
        return DEFAULT_LOCALE
    # zh-CN,zh;q=0.9 -> zh
    lang = accept_language.split(",")[0].strip().lower().split("-")[0]
    return lang if lang in SUPPORTED_LOCALES else DEFAULT_LOCALE


def get_message(code: ErrorCode, locale: str, **kwargs: str) -> str:
    template = _load_locale_messages(locale).get(code.value)
    if template is None:
        template = _load_locale_messages(DEFAULT_LOCALE).get(code.value, "Unknown error")
    if not kwargs:
        return template
    try:
        return template.format_map(kwargs)
    except KeyError:
        return template
