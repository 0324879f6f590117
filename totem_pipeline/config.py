"""
Pipeline configuration.

Loads provider credentials and call tuning from environment variables.
A local .env / .env_local file is read first (existing variables win).
"""
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv


def load_env_files(root: Optional[Path] = None) -> None:
    """Load .env_local / .env from the project root without overriding the environment."""
    root = root or Path(__file__).parent.parent
    for name in (".env_local", ".env"):
        path = root / name
        if path.exists():
            load_dotenv(path, override=False)


def _clean_env(key: str) -> Optional[str]:
    """
    Read an environment variable, stripping trailing comments and whitespace.

    "300  # comment" -> "300"
    """
    value = os.environ.get(key)
    if not value:
        return None
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    return value or None


def _parse_int_env(key: str, default: int) -> int:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float_env(key: str, default: float) -> float:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_bool_env(key: str, default: bool) -> bool:
    value = _clean_env(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


@dataclass
class DeepgramSettings:
    """Streaming transcription (Deepgram live API)."""

    api_key: str = ""
    url: str = "wss://api.deepgram.com/v1/listen"
    model: str = "nova-2"
    language: str = "es-ES"
    sample_rate: int = 16000
    channels: int = 1
    encoding: str = "linear16"
    connect_timeout_s: float = 10.0

    def query_params(self) -> Dict[str, str]:
        return {
            "model": self.model,
            "language": self.language,
            "smart_format": "true",
            "punctuate": "true",
            "interim_results": "true",
            "diarize": "false",
            "utterances": "false",
            "profanity_filter": "false",
            "encoding": self.encoding,
            "sample_rate": str(self.sample_rate),
            "channels": str(self.channels),
        }


@dataclass
class AzureSearchSettings:
    api_key: str = ""
    endpoint: str = ""
    index_name: str = "iadium-knowledge"
    api_version: str = "2023-07-01-Preview"
    default_filter: str = "modulo eq 'mounjaro'"
    top_k: int = 3
    timeout_s: float = 10.0

    @property
    def search_url(self) -> str:
        return (
            f"{self.endpoint.rstrip('/')}/indexes/{self.index_name}"
            f"/docs/search?api-version={self.api_version}"
        )


@dataclass
class AzureOpenAISettings:
    api_key: str = ""
    endpoint: str = ""
    deployment: str = "gpt-4.1-mini"
    api_version: str = "2025-01-01-preview"
    temperature: float = 0.7
    max_tokens: int = 500
    timeout_s: float = 30.0

    @property
    def completions_url(self) -> str:
        return (
            f"{self.endpoint.rstrip('/')}/openai/deployments/{self.deployment}"
            f"/chat/completions?api-version={self.api_version}"
        )


@dataclass
class ElevenLabsSettings:
    api_key: str = ""
    base_url: str = "https://api.elevenlabs.io/v1"
    voice_id: str = "21m00Tcm4TlvDq8ikWAM"
    model_id: str = "eleven_monolingual_v1"
    stability: float = 0.5
    similarity_boost: float = 0.75
    style: float = 0.0
    use_speaker_boost: bool = False
    max_chars: int = 5000
    timeout_s: float = 30.0

    def voice_settings(self) -> Dict[str, object]:
        return {
            "stability": self.stability,
            "similarity_boost": self.similarity_boost,
            "style": self.style,
            "use_speaker_boost": self.use_speaker_boost,
        }


@dataclass
class CallSettings:
    """Tuning of one continuous call (timers in seconds, silence in ms)."""

    generation_timeout_s: float = 15.0
    reconnect_delay_s: float = 5.0
    keep_alive_interval_s: float = 30.0
    # 0 keeps the pending queue unbounded
    max_pending: int = 0

    silence_threshold: float = 0.001
    silence_min_duration_ms: int = 300
    silence_history_size: int = 5
    silence_smoothing: float = 0.4
    sample_rate: int = 16000
    channels: int = 1

    def update(self, **changes) -> "CallSettings":
        """Return a copy with the known keys replaced; unknown keys raise ValueError."""
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown call settings: {sorted(unknown)}")
        return replace(self, **changes)


@dataclass
class PipelineConfig:
    """Everything the pipeline needs from the environment."""

    deepgram: DeepgramSettings = field(default_factory=DeepgramSettings)
    search: AzureSearchSettings = field(default_factory=AzureSearchSettings)
    openai: AzureOpenAISettings = field(default_factory=AzureOpenAISettings)
    elevenlabs: ElevenLabsSettings = field(default_factory=ElevenLabsSettings)
    call: CallSettings = field(default_factory=CallSettings)
    scenario: str = "default"

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Load configuration from environment variables. Missing keys fall back to defaults."""
        return cls(
            deepgram=DeepgramSettings(
                api_key=os.environ.get("DEEPGRAM_API_KEY", ""),
                model=os.environ.get("DEEPGRAM_MODEL", "nova-2"),
                language=os.environ.get("DEEPGRAM_LANGUAGE", "es-ES"),
                connect_timeout_s=_parse_float_env("DEEPGRAM_CONNECT_TIMEOUT_S", 10.0),
            ),
            search=AzureSearchSettings(
                api_key=os.environ.get("AZURE_SEARCH_API_KEY", ""),
                endpoint=os.environ.get("AZURE_SEARCH_ENDPOINT", ""),
                index_name=os.environ.get("AZURE_SEARCH_INDEX", "iadium-knowledge"),
                api_version=os.environ.get("AZURE_SEARCH_API_VERSION", "2023-07-01-Preview"),
                default_filter=os.environ.get("AZURE_SEARCH_FILTER", "modulo eq 'mounjaro'"),
                top_k=_parse_int_env("AZURE_SEARCH_TOP", 3),
            ),
            openai=AzureOpenAISettings(
                api_key=os.environ.get("AZURE_OPENAI_API_KEY", ""),
                endpoint=os.environ.get("AZURE_OPENAI_ENDPOINT", ""),
                deployment=os.environ.get("AZURE_OPENAI_DEPLOYMENT", "gpt-4.1-mini"),
                api_version=os.environ.get("AZURE_OPENAI_API_VERSION", "2025-01-01-preview"),
                temperature=_parse_float_env("AZURE_OPENAI_TEMPERATURE", 0.7),
                max_tokens=_parse_int_env("AZURE_OPENAI_MAX_TOKENS", 500),
            ),
            elevenlabs=ElevenLabsSettings(
                api_key=os.environ.get("ELEVENLABS_API_KEY", ""),
                voice_id=os.environ.get("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM"),
                model_id=os.environ.get("ELEVENLABS_MODEL_ID", "eleven_monolingual_v1"),
                max_chars=_parse_int_env("ELEVENLABS_MAX_CHARS", 5000),
                use_speaker_boost=_parse_bool_env("ELEVENLABS_SPEAKER_BOOST", False),
            ),
            call=CallSettings(
                generation_timeout_s=_parse_float_env("GENERATION_TIMEOUT_S", 15.0),
                reconnect_delay_s=_parse_float_env("TRANSCRIBER_RECONNECT_DELAY_S", 5.0),
                keep_alive_interval_s=_parse_float_env("TRANSCRIBER_KEEPALIVE_S", 30.0),
                max_pending=_parse_int_env("MAX_PENDING_UTTERANCES", 0),
                silence_threshold=_parse_float_env("SILENCE_THRESHOLD", 0.001),
                silence_min_duration_ms=_parse_int_env("SILENCE_MIN_DURATION_MS", 300),
                silence_history_size=_parse_int_env("SILENCE_HISTORY_SIZE", 5),
                silence_smoothing=_parse_float_env("SILENCE_SMOOTHING", 0.4),
            ),
            scenario=os.environ.get("TOTEM_SCENARIO", "default"),
        )

    def missing_credentials(self) -> List[str]:
        """Names of the API keys that are not configured."""
        checks = {
            "DEEPGRAM_API_KEY": self.deepgram.api_key,
            "AZURE_SEARCH_API_KEY": self.search.api_key,
            "AZURE_OPENAI_API_KEY": self.openai.api_key,
            "ELEVENLABS_API_KEY": self.elevenlabs.api_key,
        }
        return [name for name, value in checks.items() if not value]

    def validation_summary(self) -> Dict[str, object]:
        missing = self.missing_credentials()
        return {
            "isValid": not missing,
            "details": {
                "deepgram": bool(self.deepgram.api_key),
                "azureSearch": bool(self.search.api_key),
                "azureOpenAI": bool(self.openai.api_key),
                "elevenLabs": bool(self.elevenlabs.api_key),
            },
        }


def get_config() -> PipelineConfig:
    """Get or create the process-wide config instance."""
    global _config
    if _config is None:
        load_env_files()
        _config = PipelineConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[PipelineConfig] = None
