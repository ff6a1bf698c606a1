"""
Learning-content services built on the fallback dispatcher.

Each service builds a prompt, dispatches it with a strict parser and returns
the DispatchResult. StoryItemGenerator adapts the story service to the job
queue's per-item interface.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Sequence, Tuple

from ..providers.base import ProviderRequest
from ..storage.models import ContentItem, JobParams
from .dispatcher import DispatchResult, FallbackDispatcher
from .parsing import parse_cloze, parse_story, parse_translation

logger = logging.getLogger(__name__)

STORY_WORD_COUNT = 120
STORY_MAX_TOKENS = 1200
CLOZE_MAX_TOKENS = 800
TRANSLATION_MAX_TOKENS = 600


@dataclass(frozen=True)
class LearningContext:
    l1: str  # learner's native language
    l2: str  # language being learned
    level: str
    difficulties: Tuple[str, ...] = ()
    style: str = "casual"

    @classmethod
    def from_params(cls, params: JobParams) -> "LearningContext":
        return cls(l1=params.l1, l2=params.l2, level=params.level, difficulties=params.difficulties)


def _fenced(text: str) -> str:
    return f"```\n{text}\n```"


def build_translation_prompt(text: str, context: str, ctx: LearningContext) -> str:
    if ctx.l1 == ctx.l2:
        return (
            f"You are a language learning assistant. Explain the following {ctx.l2} phrase "
            f"for a {ctx.level} learner.\n\nPhrase:\n{_fenced(text)}\n"
            f"Context:\n{_fenced(context)}\n\n"
            'Answer with a JSON object {"phrase_translation": "", "explanation": "..."}; '
            "leave phrase_translation empty and write the explanation as Markdown. "
            f"Answer in {ctx.l1}."
        )
    difficulties = ", ".join(ctx.difficulties) or "none in particular"
    return (
        f"You are a language learning assistant. Translate the following phrase from "
        f"{ctx.l2} to {ctx.l1} for a {ctx.level} learner who struggles with: {difficulties}.\n\n"
        f"Phrase:\n{_fenced(text)}\nContext:\n{_fenced(context)}\n\n"
        'Answer with a JSON object {"phrase_translation": "...", "explanation": "..."}. '
        "Write the explanation as Markdown and pair translated words with the original "
        f"{ctx.l2} word in parentheses. Answer in {ctx.l1}."
    )


def build_story_prompt(items: Sequence[ContentItem], ctx: LearningContext, word_count: int) -> str:
    phrases = "\n".join(
        f'{i}. "{item.text}"' + (f" ({item.translation})" if item.translation else "")
        for i, item in enumerate(items, start=1)
    )
    return (
        f"You are a language learning tutor. Write a {ctx.style} story of about {word_count} "
        f"words in {ctx.l2} for a {ctx.level} learner that naturally uses every phrase below.\n\n"
        f"Phrases:\n{phrases}\n\n"
        f"The learner's native language is {ctx.l1}.\n"
        'Return a JSON object: {"story": "...", "usedPhrases": [{"phrase": "...", '
        '"position": 0, "gloss": "..."}], "metadata": {"wordCount": 0, '
        '"difficulty": "...", "topics": []}}'
    )


def build_cloze_prompt(item: ContentItem, ctx: LearningContext, difficulty: str, max_clozes: int) -> str:
    return (
        f"You are a language tutor writing spaced-repetition cards. Create {max_clozes} cloze "
        f"deletions for the {ctx.l2} phrase below, each blanking the word that best shows "
        f"'{difficulty}'. Use \"[...]\" for the blank.\n\n"
        f"Phrase:\n{_fenced(item.text)}\nTranslation ({ctx.l1}):\n{_fenced(item.translation)}\n"
        f"Context:\n{_fenced(item.context)}\nLearner level: {ctx.level}\n\n"
        'Return only a JSON array of {"cloze_text", "answer", "hint", "explanation"} objects; '
        f"hints in {ctx.l1}."
    )


def fallback_story(item: ContentItem) -> str:
    """Minimal stand-in story used when generation for an item failed."""
    gloss = f" ({item.translation})" if item.translation else ""
    return (
        f'Story featuring "{item.text}"{gloss}: a short narrative to help you remember '
        "this phrase in context. Practice using it in similar situations."
    )


class TranslationService:
    def __init__(self, dispatcher: FallbackDispatcher):
        self.dispatcher = dispatcher

    async def translate(self, text: str, context: str, ctx: LearningContext) -> DispatchResult:
        params = {
            "text": text,
            "context": context,
            "l1": ctx.l1,
            "l2": ctx.l2,
            "level": ctx.level,
            "difficulties": list(ctx.difficulties),
        }
        request = ProviderRequest(
            prompt=build_translation_prompt(text, context, ctx),
            max_tokens=TRANSLATION_MAX_TOKENS,
        )
        return await self.dispatcher.dispatch("translate", params, request, parse_translation)


class StoryService:
    def __init__(self, dispatcher: FallbackDispatcher, word_count: int = STORY_WORD_COUNT):
        self.dispatcher = dispatcher
        self.word_count = word_count

    async def generate(self, items: Sequence[ContentItem], ctx: LearningContext) -> DispatchResult:
        if not items:
            raise ValueError("at least one item is required")
        params = {
            "items": [[item.text, item.translation] for item in items],
            "l1": ctx.l1,
            "l2": ctx.l2,
            "level": ctx.level,
            "word_count": self.word_count,
        }
        request = ProviderRequest(
            prompt=build_story_prompt(items, ctx, self.word_count),
            max_tokens=STORY_MAX_TOKENS,
        )
        return await self.dispatcher.dispatch("story", params, request, parse_story)


class ClozeService:
    def __init__(self, dispatcher: FallbackDispatcher, max_clozes: int = 2):
        self.dispatcher = dispatcher
        self.max_clozes = max_clozes

    async def generate(self, item: ContentItem, ctx: LearningContext, difficulty: str) -> DispatchResult:
        params = {
            "text": item.text,
            "translation": item.translation,
            "context": item.context,
            "difficulty": difficulty,
            "l1": ctx.l1,
            "l2": ctx.l2,
            "level": ctx.level,
            "max_clozes": self.max_clozes,
        }
        request = ProviderRequest(
            prompt=build_cloze_prompt(item, ctx, difficulty, self.max_clozes),
            max_tokens=CLOZE_MAX_TOKENS,
        )
        return await self.dispatcher.dispatch("cloze", params, request, parse_cloze)


class StoryItemGenerator:
    """Generates one story per item for the job queue."""

    def __init__(self, stories: StoryService):
        self.stories = stories

    async def generate(self, item: ContentItem, params: JobParams) -> Dict[str, Any]:
        result = await self.stories.generate([item], LearningContext.from_params(params))
        return {
            "phrase": item.text,
            "translation": item.translation,
            "context": item.context,
            "story": result.data["story"],
            "glosses": [
                {"phrase": p.get("phrase", ""), "gloss": p.get("gloss", "")}
                for p in result.data["used_phrases"]
                if isinstance(p, dict)
            ],
            "provider": result.provider,
        }

    def placeholder(self, item: ContentItem, params: JobParams) -> Dict[str, Any]:
        return {
            "phrase": item.text,
            "translation": item.translation,
            "context": item.context,
            "story": fallback_story(item),
            "glosses": [],
            "provider": None,
        }
