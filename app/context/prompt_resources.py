"""File-backed prompt resources, loaded once per process.

Resources live in ``app/context/prompts``. A missing, unreadable or blank
file falls back to the built-in safe instructions so a prompt is never
empty.
"""

from pathlib import Path
from types import MappingProxyType

from app.context.prompt_blocks import FALLBACK_BASE_INSTRUCTIONS
from app.core.logging import get_logger

logger = get_logger(__name__)

PROMPTS_DIR = Path(__file__).parent / "prompts"

BASE_COACHING = "base_coaching"
DISCOVERY = "discovery"

_RESOURCE_NAMES = (BASE_COACHING, DISCOVERY)


def load_prompt_resources(directory: Path = PROMPTS_DIR) -> MappingProxyType:
    """Read every known resource, substituting the fallback where needed."""
    loaded: dict[str, str] = {}
    for name in _RESOURCE_NAMES:
        path = directory / f"{name}.txt"
        try:
            text = path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Prompt resource {name} unreadable, using fallback: {e}")
            text = ""
        if not text:
            logger.warning(f"Prompt resource {name} is empty, using fallback")
            text = FALLBACK_BASE_INSTRUCTIONS
        loaded[name] = text
    return MappingProxyType(loaded)


PROMPT_RESOURCES = load_prompt_resources()


def get_base_instructions(discovery_mode: bool = False) -> str:
    return PROMPT_RESOURCES[DISCOVERY if discovery_mode else BASE_COACHING]
