"""
Hand-written provider fakes shared by the orchestrator and transport tests.
"""
import asyncio
from types import SimpleNamespace

import pytest

from observability.event_store import event_store
from totem_pipeline.config import (
    AzureOpenAISettings,
    AzureSearchSettings,
    CallSettings,
    DeepgramSettings,
    ElevenLabsSettings,
    PipelineConfig,
)
from totem_pipeline.errors import TranscriptionError
from totem_pipeline.instructions import load_scenario
from totem_pipeline.llm import Completion
from totem_pipeline.orchestrator import CallOrchestrator
from totem_pipeline.responder import Reply, ResponseGenerator
from totem_pipeline.search import SearchSnippet
from totem_server.config import ServerConfig
from totem_server.services import Services
from totem_server.totem_service import TotemService


class FakeHandle:
    def __init__(self):
        self.frames = []
        self.keep_alives = 0
        self.closed = False


class FakeLink:
    """Stands in for TranscriptionLink; tests push transcripts and errors by hand."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.handles = []
        self.open_calls = 0
        self.on_transcript = None
        self.on_error = None

    @property
    def handle(self):
        return self.handles[-1] if self.handles else None

    async def open(self, on_transcript, on_error, *, session_id="-"):
        self.open_calls += 1
        self.on_transcript = on_transcript
        self.on_error = on_error
        if self.fail:
            on_error(TranscriptionError("Deepgram connection failed"))
            return None
        handle = FakeHandle()
        self.handles.append(handle)
        return handle

    async def send_frame(self, handle, frame):
        if handle is None or handle.closed:
            return
        handle.frames.append(frame)

    async def send_keep_alive(self, handle):
        if handle is None or handle.closed:
            return
        handle.keep_alives += 1

    async def close(self, handle):
        if handle is not None:
            handle.closed = True


class ScriptedLink(FakeLink):
    """Answers every audio frame with the next scripted final transcript."""

    def __init__(self, finals=()):
        super().__init__()
        self.finals = list(finals)

    async def send_frame(self, handle, frame):
        await super().send_frame(handle, frame)
        if self.finals and self.on_transcript is not None:
            self.on_transcript(self.finals.pop(0), True, 0.95)


class FakeResponder:
    def __init__(self, log=None):
        self.calls = []
        self.errors = {}
        self.gates = {}
        self.active = 0
        self.max_active = 0
        self.log = log if log is not None else []

    def hold(self, question: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[question] = gate
        return gate

    async def generate(self, question, *, filter=None, prompt=None):
        self.calls.append(question)
        self.log.append(("generate", question))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            gate = self.gates.get(question)
            if gate is not None:
                await gate.wait()
            if question in self.errors:
                raise self.errors[question]
            return Reply(text=f"respuesta: {question}")
        finally:
            self.active -= 1


class FakeSynthesizer:
    def __init__(self, log=None):
        self.calls = []
        self.errors = {}
        self.gates = {}
        self.log = log if log is not None else []

    def hold(self, text: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[text] = gate
        return gate

    async def synthesize(self, text):
        self.calls.append(text)
        self.log.append(("synthesize", text))
        gate = self.gates.get(text)
        if gate is not None:
            await gate.wait()
        if text in self.errors:
            raise self.errors[text]
        return f"mp3:{text}".encode()


class FakeSearch:
    """Stands in for AzureSearchClient."""

    def __init__(self, snippets=None, error=None):
        self.snippets = snippets if snippets is not None else [
            SearchSnippet(score=2.5, chunk="Mounjaro (tirzepatida) se usa en diabetes tipo 2.", title="Ficha", chunk_id="c1"),
            SearchSnippet(score=1.5, chunk="Se administra una vez por semana.", title="Ficha", chunk_id="c2"),
        ]
        self.error = error
        self.calls = []

    async def search(self, query, filter=None, top=None):
        self.calls.append((query, filter, top))
        if self.error is not None:
            raise self.error
        return list(self.snippets)


class FakeLLM:
    """Stands in for AzureOpenAIClient."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def generate(self, user_message, context="", prompt=None):
        self.calls.append((user_message, context, prompt))
        if self.error is not None:
            raise self.error
        return Completion(text=f"Respuesta sobre {user_message}", usage={"total_tokens": 42})


class FakeSleep:
    """Sleeps that only end when the test releases them, keyed by delay."""

    def __init__(self):
        self.calls = []
        self._waiters = []

    async def __call__(self, delay):
        self.calls.append(delay)
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((delay, future))
        await future

    def pending(self, delay) -> int:
        return sum(1 for d, f in self._waiters if d == delay and not f.done())

    def release(self, delay) -> None:
        for d, future in self._waiters:
            if d == delay and not future.done():
                future.set_result(None)


async def until(condition, timeout: float = 1.0) -> None:
    """Let the loop run until condition() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_services(link=None, search=None, llm=None, synthesizer=None, credentials=True, call=None):
    """Services wired to fakes, for apps built with create_app(services)."""
    key = "test_key" if credentials else ""
    pipeline_config = PipelineConfig(
        deepgram=DeepgramSettings(api_key=key),
        search=AzureSearchSettings(api_key=key),
        openai=AzureOpenAISettings(api_key=key),
        elevenlabs=ElevenLabsSettings(api_key=key),
        call=call or CallSettings(),
    )
    responder = ResponseGenerator(
        search or FakeSearch(),
        llm or FakeLLM(),
        load_scenario("default"),
        default_filter="modulo eq 'mounjaro'",
    )
    synthesizer = synthesizer or FakeSynthesizer()
    return Services(
        pipeline_config=pipeline_config,
        server_config=ServerConfig(),
        link=link or FakeLink(),
        responder=responder,
        synthesizer=synthesizer,
        totem=TotemService(responder, synthesizer),
    )


@pytest.fixture(autouse=True)
def clear_event_store():
    event_store.clear()
    yield
    event_store.clear()


@pytest.fixture
def call_factory():
    """Build an orchestrator wired to fakes; returns a namespace with all parts."""

    def _make(link_fails: bool = False, **settings):
        log = []
        events = []
        parts = SimpleNamespace(
            link=FakeLink(fail=link_fails),
            responder=FakeResponder(log),
            synthesizer=FakeSynthesizer(log),
            sleep=FakeSleep(),
            events=events,
            log=log,
        )
        parts.settings = CallSettings(**{
            "generation_timeout_s": 1.0,
            "reconnect_delay_s": 5.0,
            "keep_alive_interval_s": 30.0,
            **settings,
        })
        parts.call = CallOrchestrator(
            "sess_test",
            link=parts.link,
            responder=parts.responder,
            synthesizer=parts.synthesizer,
            sink=events.append,
            settings=parts.settings,
            sleep=parts.sleep,
        )
        parts.of_type = lambda cls: [e for e in events if isinstance(e, cls)]
        return parts

    return _make
