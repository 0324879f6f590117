"""
One-shot question answering for the totem screen.

Same search → language model → speech path as a live call, but for a single
text question with the audio returned inline as a data URL.
"""
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter, Severity, pii_fields
from totem_pipeline.errors import ProviderErrorHandler, SearchError
from totem_pipeline.responder import ResponseGenerator
from totem_pipeline.synthesizer import ElevenLabsSynthesizer, audio_data_url

logger = get_logger(Component.TOTEM)
emitter = EventEmitter(ObsComponent.TOTEM)

QUESTIONS_FILE = Path(__file__).parent / "questions.yaml"

AUDIO_WARNING = "Respuesta generada pero no se pudo crear el audio."
SEARCH_FAILED = ("Error en la búsqueda de información", "Lo siento, no pude buscar información relevante en este momento.")
GENERATION_FAILED = ("Error en la generación de respuesta", "Lo siento, no pude generar una respuesta en este momento.")
INTERNAL_FAILED = ("Error interno del sistema", "Lo siento, ocurrió un error inesperado. Por favor, intenta de nuevo.")


@dataclass(frozen=True)
class PredefinedQuestion:
    id: str
    text: str
    question: str
    prompt: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text, "question": self.question}


@dataclass
class QuestionResult:
    success: bool
    text: str
    audio_url: Optional[str] = None
    search_results: int = 0
    usage: Optional[Dict[str, Any]] = None
    warning: Optional[str] = None
    error: Optional[str] = None


def load_questions(path: Optional[Path] = None) -> List[PredefinedQuestion]:
    path = path or QUESTIONS_FILE
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Questions file {path} must contain a mapping at top-level")
    return [
        PredefinedQuestion(
            id=str(item["id"]),
            text=str(item["text"]),
            question=str(item["question"]),
            prompt=item.get("prompt"),
        )
        for item in data.get("questions") or []
    ]


class TotemService:
    def __init__(
        self,
        responder: ResponseGenerator,
        synthesizer: ElevenLabsSynthesizer,
        questions: Optional[List[PredefinedQuestion]] = None,
    ):
        self._responder = responder
        self._synthesizer = synthesizer
        self._questions = questions if questions is not None else load_questions()

    async def process_question(
        self,
        question: str,
        filter: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> QuestionResult:
        """
        Answer one question with text and, when synthesis works, audio.

        Search or language model failures give success=False with an
        apologetic text; a synthesis failure still returns the text.
        Raises ValueError for an empty question.
        """
        if not (question or "").strip():
            raise ValueError("question must not be empty")

        request_id = f"totem_{int(time.time() * 1000)}"
        emitter.emit(
            "totem.question",
            session_id=request_id,
            pii=pii_fields(["question"]),
            question=question,
            has_prompt=prompt is not None,
        )

        try:
            reply = await self._responder.generate(question, filter=filter, prompt=prompt)
        except SearchError as e:
            ProviderErrorHandler.handle_error(request_id, e)
            return QuestionResult(success=False, error=SEARCH_FAILED[0], text=SEARCH_FAILED[1])
        except Exception as e:
            # Everything past the search step is the language model
            ProviderErrorHandler.handle_error(request_id, e)
            failure = GENERATION_FAILED if getattr(e, "provider", None) else INTERNAL_FAILED
            return QuestionResult(success=False, error=failure[0], text=failure[1])

        result = QuestionResult(
            success=True,
            text=reply.text,
            search_results=len(reply.search_results),
            usage=reply.usage,
        )

        try:
            audio = await self._synthesizer.synthesize(reply.text)
        except Exception as e:
            ProviderErrorHandler.handle_error(request_id, e)
            logger.warning("Answer returned without audio", error_type=type(e).__name__)
            result.warning = AUDIO_WARNING
        else:
            result.audio_url = audio_data_url(audio)

        emitter.emit(
            "totem.answered",
            session_id=request_id,
            severity=Severity.INFO if result.audio_url else Severity.WARN,
            greeting=reply.greeting,
            search_results=result.search_results,
            has_audio=result.audio_url is not None,
        )
        return result

    def get_predefined_questions(self) -> List[PredefinedQuestion]:
        return list(self._questions)

    def get_predefined_question(self, question_id: str) -> Optional[PredefinedQuestion]:
        for question in self._questions:
            if question.id == question_id:
                return question
        return None

    async def validate_services(self) -> Dict[str, bool]:
        """Cheap live probe of each provider."""
        results = {"search": False, "openai": False, "tts": False}

        try:
            await self._responder.search.search("test", filter=self._responder.default_filter, top=1)
            results["search"] = True
        except Exception as e:
            logger.warning("Search probe failed", error_type=type(e).__name__, error=str(e))

        try:
            await self._responder.llm.generate("test")
            results["openai"] = True
        except Exception as e:
            logger.warning("Language model probe failed", error_type=type(e).__name__, error=str(e))

        try:
            await self._synthesizer.synthesize("Test de síntesis de voz.")
            results["tts"] = True
        except Exception as e:
            logger.warning("Speech probe failed", error_type=type(e).__name__, error=str(e))

        return results
