"""
Process-wide collaborators, built once at startup.

Provider clients are shared between sessions (they hold only connection
pools); each session gets its own CallOrchestrator.
"""
from dataclasses import dataclass, field
from typing import Callable

from logging_setup import get_logger, Component
from totem_pipeline.config import PipelineConfig
from totem_pipeline.events import CallEvent
from totem_pipeline.instructions import get_scenario
from totem_pipeline.llm import AzureOpenAIClient
from totem_pipeline.orchestrator import CallOrchestrator
from totem_pipeline.responder import ResponseGenerator
from totem_pipeline.search import AzureSearchClient
from totem_pipeline.synthesizer import ElevenLabsSynthesizer
from totem_pipeline.transcription import TranscriptionLink
from .config import ServerConfig
from .session import SessionManager
from .totem_service import TotemService

logger = get_logger(Component.SERVER)


@dataclass
class Services:
    pipeline_config: PipelineConfig
    server_config: ServerConfig
    link: TranscriptionLink
    responder: ResponseGenerator
    synthesizer: ElevenLabsSynthesizer
    totem: TotemService
    sessions: SessionManager = field(default_factory=SessionManager)

    def create_orchestrator(self, session_id: str, sink: Callable[[CallEvent], None]) -> CallOrchestrator:
        return CallOrchestrator(
            session_id,
            link=self.link,
            responder=self.responder,
            synthesizer=self.synthesizer,
            sink=sink,
            settings=self.pipeline_config.call,
        )

    async def aclose(self) -> None:
        for client in (self.responder.search, self.responder.llm, self.synthesizer):
            await client.aclose()


def build_services(pipeline_config: PipelineConfig, server_config: ServerConfig) -> Services:
    scenario = get_scenario(pipeline_config.scenario)
    search = AzureSearchClient(pipeline_config.search)
    llm = AzureOpenAIClient(pipeline_config.openai, scenario)
    responder = ResponseGenerator(
        search,
        llm,
        scenario,
        default_filter=pipeline_config.search.default_filter,
        top_k=pipeline_config.search.top_k,
    )
    synthesizer = ElevenLabsSynthesizer(pipeline_config.elevenlabs)

    missing = pipeline_config.missing_credentials()
    if missing:
        logger.warning("Provider credentials missing", missing=missing)
    logger.info("Services ready", scenario=scenario.name)

    return Services(
        pipeline_config=pipeline_config,
        server_config=server_config,
        link=TranscriptionLink(pipeline_config.deepgram),
        responder=responder,
        synthesizer=synthesizer,
        totem=TotemService(responder, synthesizer),
    )
