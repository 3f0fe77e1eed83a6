"""System prompt table."""

from pathlib import Path
from typing import Optional

from shared.config import load_yaml_config
from shared.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PROMPTS_PATH = Path(__file__).with_name("prompts.yaml")
DEFAULT_PROMPT_TYPE = "standardAssistant"


class PromptLibrary:
    """Named system prompts with a required default entry."""

    def __init__(self, prompts: dict[str, str], default: str = DEFAULT_PROMPT_TYPE) -> None:
        if default not in prompts:
            raise ValueError(f"Prompt table has no default entry '{default}'")
        self.prompts = prompts
        self.default = default

    @classmethod
    def from_yaml(cls, path: Optional[str | Path] = None, default: str = DEFAULT_PROMPT_TYPE) -> "PromptLibrary":
        """Load prompts from a YAML file shaped as ``system_prompts: {name: {content: ...}}``."""
        data = load_yaml_config(path or DEFAULT_PROMPTS_PATH)
        prompts = {
            name: entry["content"]
            for name, entry in (data.get("system_prompts") or {}).items()
            if entry and entry.get("content")
        }
        return cls(prompts, default=default)

    def resolve(self, prompt_type: Optional[str]) -> str:
        """Get the prompt text for a name, falling back to the default."""
        if prompt_type and prompt_type in self.prompts:
            return self.prompts[prompt_type]
        if prompt_type:
            logger.debug("Unknown prompt type, using default", prompt_type=prompt_type)
        return self.prompts[self.default]

    def names(self) -> list[str]:
        return list(self.prompts)
