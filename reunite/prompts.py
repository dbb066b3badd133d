"""
Reunite — Prompts
Chat messages sent by the relay to the large model.
"""

from __future__ import annotations

from typing import Any

from . import config
from .embedder import is_placeholder
from .models import Item

BATCH_SYSTEM_PROMPT = """You are an AI assistant that helps match lost and found items. Analyze the source item and compare it with candidate items to find potential matches.

Consider these factors when scoring:
1. Category match (very important)
2. Description similarity - look for matching keywords, colors, brands, models
3. Location proximity - similar locations or areas
4. Date proximity - items lost/found around the same time
5. Visual similarity if images are provided

Return a JSON array of matches with scores from 0-100. Only include items with score >= 40.

Response format:
{
  "matches": [
    {
      "index": 0,
      "score": 85,
      "reasoning": "Brief explanation of why this is a match"
    }
  ]
}"""

SINGLE_SYSTEM_PROMPT = "You are an AI that matches lost and found items. Return JSON only."


def _describe(item: Item) -> str:
    return (
        f"Title: {item.title}\n"
        f"Description: {item.description}\n"
        f"Category: {item.category}\n"
        f"Location: {item.location}\n"
        f"Date: {item.date.isoformat()}"
    )


def _text(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def _image(url: str) -> dict[str, Any]:
    return {"type": "image_url", "image_url": {"url": url}}


def batch_messages(source: Item, candidates: list[Item]) -> list[dict[str, Any]]:
    """System + user messages asking for index-keyed scores of every candidate."""
    listing = "\n".join(
        f"\n[{idx}] ID: {c.id}\n{_describe(c)}\nHas Image: {'Yes' if c.image_url else 'No'}\n"
        for idx, c in enumerate(candidates)
    )
    prompt = (
        f"SOURCE ITEM ({source.type.upper()}):\n"
        f"{_describe(source)}\n"
        f"Has Image: {'Yes' if source.image_url else 'No'}\n\n"
        f"CANDIDATE ITEMS TO COMPARE:\n{listing}\n\n"
        "Analyze each candidate and return matching scores."
    )
    content = [_text(prompt)]

    if not is_placeholder(source.image_url):
        content += [_image(source.image_url), _text("Above is the SOURCE ITEM image.")]

    with_images = [(idx, c) for idx, c in enumerate(candidates) if not is_placeholder(c.image_url)]
    for idx, candidate in with_images[: config.MAX_PROMPT_IMAGES]:
        content += [_image(candidate.image_url), _text(f"Above is candidate [{idx}] image.")]

    return [
        {"role": "system", "content": BATCH_SYSTEM_PROMPT},
        {"role": "user", "content": content},
    ]


def single_messages(first: Item, second: Item) -> list[dict[str, Any]]:
    """Messages asking whether two items could be the same object."""
    prompt = (
        "Compare these two items and determine if they could be the same item (one lost, one found).\n\n"
        f"ITEM 1 ({first.type.upper()}):\n{_describe(first)}\n\n"
        f"ITEM 2 ({second.type.upper()}):\n{_describe(second)}\n\n"
        "Return a JSON object with:\n"
        "- score: 0-100 representing match likelihood\n"
        "- reasoning: brief explanation"
    )
    content = [_text(prompt)]
    for label, item in (("ITEM 1", first), ("ITEM 2", second)):
        if not is_placeholder(item.image_url):
            content += [_image(item.image_url), _text(f"Above is {label} image.")]
    return [
        {"role": "system", "content": SINGLE_SYSTEM_PROMPT},
        {"role": "user", "content": content},
    ]
