"""
Response generation: knowledge search followed by the language model.

Shared by the live call path and the one-shot HTTP path.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from logging_setup import get_logger, Component
from .instructions import Scenario
from .llm import AzureOpenAIClient
from .search import AzureSearchClient, SearchSnippet, extract_relevant_text

logger = get_logger(Component.LLM)


@dataclass(frozen=True)
class Reply:
    text: str
    search_results: List[SearchSnippet] = field(default_factory=list)
    usage: Optional[Dict[str, Any]] = None
    greeting: bool = False


class ResponseGenerator:
    def __init__(
        self,
        search: AzureSearchClient,
        llm: AzureOpenAIClient,
        scenario: Scenario,
        *,
        default_filter: Optional[str] = None,
        top_k: int = 3,
    ):
        self._search = search
        self._llm = llm
        self._scenario = scenario
        self._default_filter = default_filter
        self._top_k = top_k

    @property
    def search(self) -> AzureSearchClient:
        return self._search

    @property
    def llm(self) -> AzureOpenAIClient:
        return self._llm

    @property
    def default_filter(self) -> Optional[str]:
        return self._default_filter

    async def generate(
        self,
        question: str,
        *,
        filter: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> Reply:
        """
        Answer one question.

        Raises ValueError for an empty question, SearchError or
        GenerationError when a provider fails.
        """
        question = (question or "").strip()
        if not question:
            raise ValueError("question must not be empty")

        if self._scenario.is_greeting(question):
            logger.debug("Greeting shortcut")
            return Reply(text=self._scenario.greeting_text, greeting=True)

        snippets = await self._search.search(
            question,
            filter=filter if filter is not None else self._default_filter,
            top=self._top_k,
        )
        context = extract_relevant_text(snippets)
        completion = await self._llm.generate(question, context, prompt)
        return Reply(text=completion.text, search_results=snippets, usage=completion.usage)
