"""
System prompts and greetings for the totem assistant.

Scenarios live in totem_pipeline/scenarios as YAML (JSON also parses,
since PyYAML's safe_load reads both). The active scenario is chosen by
name, then the TOTEM_SCENARIO environment variable, then "default".
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml


FALLBACK_SYSTEM_PROMPT = """
Eres un asistente especializado en Mounjaro (tirzepatide). Responde de manera
clara y precisa en español, basándote en la información de Mounjaro disponible.
""".strip()

FALLBACK_GREETING = "Hola, ¿en qué puedo ayudarte hoy?"


@dataclass(frozen=True)
class Scenario:
    name: str
    system_prompt: str
    context_prefix: str = "Información de referencia:"
    greeting_text: str = FALLBACK_GREETING
    greetings: Tuple[str, ...] = field(default_factory=lambda: ("hola", "hello", "hi"))

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "Scenario":
        greetings = data.get("greetings") or ("hola", "hello", "hi")
        return cls(
            name=str(data.get("name", "default")),
            system_prompt=str(data.get("system_prompt") or FALLBACK_SYSTEM_PROMPT).strip(),
            context_prefix=str(data.get("context_prefix") or "Información de referencia:"),
            greeting_text=str(data.get("greeting_text") or FALLBACK_GREETING),
            greetings=tuple(str(g).strip().lower() for g in greetings),
        )

    def is_greeting(self, question: str) -> bool:
        return question.strip().lower() in self.greetings

    def build_system_prompt(self, context: str = "", prompt_override: Optional[str] = None) -> str:
        """System prompt with the search context appended when there is one."""
        prompt = (prompt_override or self.system_prompt).strip()
        if context and context.strip():
            prompt = f"{prompt}\n\n{self.context_prefix} {context.strip()}"
        return prompt


def _get_scenarios_dir() -> Path:
    return Path(__file__).parent / "scenarios"


def _load_file(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Scenario file {path} must contain a mapping at top-level")
        return data


def load_scenario(scenario_name: str, scenarios_dir: Optional[Path] = None) -> Scenario:
    """
    Load a scenario.

    Resolution order:
    1) <name>.yaml / <name>.yml / <name>.json
    2) default.yaml / default.yml / default.json
    3) hardcoded fallback
    """
    scenarios_dir = scenarios_dir or _get_scenarios_dir()

    for stem in (scenario_name, "default"):
        for suffix in (".yaml", ".yml", ".json"):
            candidate = scenarios_dir / f"{stem}{suffix}"
            if candidate.exists():
                return Scenario.from_mapping(_load_file(candidate))

    return Scenario(name="default", system_prompt=FALLBACK_SYSTEM_PROMPT)


def get_scenario(name: Optional[str] = None) -> Scenario:
    """Scenario by explicit name, TOTEM_SCENARIO, or "default"."""
    return load_scenario(name or os.getenv("TOTEM_SCENARIO", "default"))
