"""Prompt construction for item images and descriptions.

When a city carries a style guide (a list of ``{style, bestFor, keywords}``
entries), the style whose words overlap most with the item text is used;
otherwise the model is left to choose a medium.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

MAX_CONTEXT_CHARS = 200
_WORD_SPLIT = re.compile(r"[,\s]+")


def _styles(style_hints: Any) -> list[dict[str, str]]:
    if not style_hints:
        return []
    if isinstance(style_hints, dict):
        style_hints = style_hints.get("styleGuide") or style_hints.get("style_guide") or []
    if not isinstance(style_hints, list):
        return []
    return [s for s in style_hints if isinstance(s, dict) and s.get("style")]


def pick_style(item_text: str, style_hints: Any) -> dict[str, str] | None:
    """Choose the style with the most keyword hits in *item_text* (first style on ties)."""
    styles = _styles(style_hints)
    if not styles:
        return None

    text = item_text.lower()
    best, best_hits = styles[0], 0
    for style in styles:
        words = _WORD_SPLIT.split(f"{style.get('bestFor', '')} {style.get('keywords', '')}".lower())
        hits = sum(1 for w in words if len(w) > 2 and w in text)
        if hits > best_hits:
            best, best_hits = style, hits
    return best


def build_image_prompt(
    item_text: str,
    city_name: str,
    description: str | None = None,
    style_hints: Any = None,
) -> str:
    prompt = f'Create a high-quality square image of "{item_text}" in {city_name}.'

    style = pick_style(item_text, style_hints)
    if style:
        prompt += (
            f' Use the "{style["style"]}" style ({style.get("keywords", "")}).'
            " No text overlay. Square 1:1 aspect ratio."
        )
        logger.debug('Selected "%s" style for "%s"', style["style"], item_text)
    else:
        prompt += (
            " Use the artistic style or photographic approach that best suits the"
            " subject matter and location. No text overlay. Square 1:1 aspect ratio."
        )

    if description:
        short = description if len(description) <= MAX_CONTEXT_CHARS else description[:MAX_CONTEXT_CHARS] + "..."
        prompt += f" Context: {short}"
    return prompt


def build_description_messages(item_text: str, city_name: str) -> list[dict[str, str]]:
    return [
        {
            "role": "system",
            "content": (
                f"You are a relatable travel guide for college students visiting {city_name}. "
                "Keep responses to 2-3 sentences (max 80 words)."
            ),
        },
        {
            "role": "user",
            "content": (
                f'Give me a fun description of why students must experience "{item_text}" '
                f"in {city_name}, with a practical tip or a historical fact."
            ),
        },
    ]


def fallback_description(item_text: str, city_name: str) -> str:
    return f"You absolutely have to experience {item_text} while in {city_name}!"


def build_items_messages(city_name: str, theme: str | None = None, count: int = 24) -> list[dict[str, str]]:
    """Chat messages asking for *count* bingo items as ``{"items": [{"text": ...}]}``."""
    prompt = (
        f"Provide a list of {count} things a college student must experience in {city_name} "
        "(food, sights, experiences). Make each item brief (5-10 words), specific, "
        f"action-oriented, and unique to {city_name}. Avoid generic items that could apply "
        f'to any city. Do not include "Arrive in {city_name}"; that is the center square.'
    )
    if theme:
        prompt += f" Theme: {theme}."
    prompt += ' Return a JSON object: {"items": [{"text": "..."}]}.'
    return [
        {
            "role": "system",
            "content": (
                "You are a travel content creator crafting engaging experiences for college "
                "students. Always return valid JSON in the exact format requested."
            ),
        },
        {"role": "user", "content": prompt},
    ]


def parse_item_texts(content: str | None) -> list[str]:
    """Item texts from a ``{"items": [...]}`` JSON reply; entries without text are dropped."""
    if not content:
        return []
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        logger.warning("Item list reply is not valid JSON: %s", content[:120])
        return []
    items = data.get("items") if isinstance(data, dict) else None
    if not isinstance(items, list):
        return []
    texts = []
    for entry in items:
        text = entry.get("text") if isinstance(entry, dict) else entry
        if isinstance(text, str) and text.strip():
            texts.append(text.strip())
    return texts
