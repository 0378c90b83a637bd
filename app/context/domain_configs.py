"""Per-domain coaching configuration.

JSON files in ``app/context/domain_configs`` are parsed once at import and
held in an immutable mapping. A ``general`` config always exists, built in
if the file is missing.
"""

import json
from pathlib import Path
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, ValidationError

from app.core.logging import get_logger

logger = get_logger(__name__)

CONFIG_DIR = Path(__file__).parent / "domain_configs"


class DomainConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    name: str
    description: str = ""
    system_prompt_addition: str = ""
    tone: str = ""
    methodology: str = ""
    personality: str = ""
    domain_keywords: tuple[str, ...] = ()
    focus_areas: tuple[str, ...] = ()
    enabled: bool = True
    guardrails: str | None = None


GENERAL_FALLBACK = DomainConfig(
    id="general",
    name="General Coaching",
    description="Broad personal coaching covering any topic",
    tone="warm, supportive, curious",
    methodology="active listening, open-ended questions, reflective coaching",
    personality="empathetic coach who adapts to whatever the person needs",
)


def load_domain_configs(directory: Path = CONFIG_DIR) -> MappingProxyType:
    """Parse every ``*.json`` in ``directory``; bad files are skipped."""
    configs: dict[str, DomainConfig] = {}
    try:
        paths = sorted(directory.glob("*.json"))
    except OSError as e:
        logger.error(f"Failed to read domain config directory {directory}: {e}")
        paths = []

    for path in paths:
        try:
            config = DomainConfig.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Skipping domain config {path.name}: {e}")
            continue
        configs[config.id] = config

    if "general" not in configs:
        logger.warning("No general domain config found, using built-in fallback")
        configs["general"] = GENERAL_FALLBACK

    return MappingProxyType(configs)


DOMAIN_CONFIGS = load_domain_configs()


def get_domain_config(domain: str | None) -> DomainConfig:
    """Config for ``domain``; unknown or disabled domains get ``general``."""
    config = DOMAIN_CONFIGS.get(domain or "general")
    if config is not None and config.enabled:
        return config
    return DOMAIN_CONFIGS.get("general", GENERAL_FALLBACK)


def get_domain_keywords(domain: str) -> tuple[str, ...]:
    config = DOMAIN_CONFIGS.get(domain)
    if config is None or not config.enabled:
        return ()
    return config.domain_keywords


def enabled_domain_configs() -> list[DomainConfig]:
    return [c for c in DOMAIN_CONFIGS.values() if c.enabled]
