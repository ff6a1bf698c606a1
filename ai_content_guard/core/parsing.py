"""
Strict extraction of structured results from provider output.

LLM output may wrap the JSON in prose or code fences; the first JSON value of
the expected kind is extracted. Missing or malformed structure raises
ContentParseError so the dispatcher treats the provider as failed.
"""

import json
import re
from typing import Any, Dict, List

from .errors import ContentParseError

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_decoder = json.JSONDecoder()


def extract_json(text: str, expected: type) -> Any:
    """Return the first JSON value of type `expected` (dict or list) in `text`."""
    if not text or not text.strip():
        raise ContentParseError("Empty response")

    candidates = [m.group(1) for m in _FENCE.finditer(text)] + [text]
    opener = "{" if expected is dict else "["
    for candidate in candidates:
        start = candidate.find(opener)
        while start != -1:
            try:
                value, _ = _decoder.raw_decode(candidate, start)
            except json.JSONDecodeError:
                value = None
            if isinstance(value, expected):
                return value
            start = candidate.find(opener, start + 1)
    raise ContentParseError(f"No JSON {expected.__name__} found in response")


def _require_str(data: Dict[str, Any], *names: str) -> str:
    for name in names:
        value = data.get(name)
        if isinstance(value, str) and value.strip():
            return value
    raise ContentParseError(f"Missing required field {names[0]!r}")


def parse_translation(text: str) -> Dict[str, str]:
    """Parse `{"phrase_translation", "explanation"}` output.

    At least one of the two fields must be non-empty; explanation mode
    legitimately leaves the translation empty.
    """
    data = extract_json(text, dict)
    translation = data.get("phrase_translation", data.get("translation", ""))
    explanation = data.get("explanation", "")
    if not isinstance(translation, str) or not isinstance(explanation, str):
        raise ContentParseError("Translation fields must be strings")
    if not translation.strip() and not explanation.strip():
        raise ContentParseError("Translation response has neither translation nor explanation")
    return {"translation": translation, "explanation": explanation}


def parse_story(text: str) -> Dict[str, Any]:
    data = extract_json(text, dict)
    story = _require_str(data, "story")
    used = data.get("usedPhrases", data.get("used_phrases", []))
    if not isinstance(used, list):
        raise ContentParseError("'usedPhrases' must be a list")
    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ContentParseError("'metadata' must be an object")
    return {
        "story": story,
        "used_phrases": used,
        "metadata": {
            "word_count": metadata.get("wordCount", len(story.split())),
            "difficulty": metadata.get("difficulty", "intermediate"),
            "topics": metadata.get("topics", []),
        },
    }


def parse_cloze(text: str) -> List[Dict[str, str]]:
    """Parse a JSON array of cloze exercises; every entry must be complete."""
    items = extract_json(text, list)
    if not items:
        raise ContentParseError("Cloze response is an empty array")
    result = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ContentParseError(f"Cloze entry {index} is not an object")
        try:
            result.append(
                {
                    "cloze_text": _require_str(item, "cloze_text", "clozeText"),
                    "answer": _require_str(item, "answer"),
                    "hint": _require_str(item, "hint"),
                    "explanation": _require_str(item, "explanation"),
                }
            )
        except ContentParseError as e:
            raise ContentParseError(f"Invalid cloze entry {index}: {e}") from e
    return result


def parse_plain(text: str) -> str:
    """Machine-translation output is the translation itself."""
    if not text or not text.strip():
        raise ContentParseError("Empty response")
    return text.strip()
