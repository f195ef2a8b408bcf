"""Named-agent presets stored as markdown with YAML front matter."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple

import frontmatter
from pydantic import ValidationError

from agent_dispatch import constants
from agent_dispatch.models.agent_config import NamedAgent
from agent_dispatch.models.agent_preset import AgentPreset
from agent_dispatch.services.agent_config_service import AgentConfigService


class AgentPresetError(RuntimeError):
    """Raised when a preset file cannot be loaded or parsed."""


def _parse_preset_text(text: str, path: Optional[Path] = None) -> AgentPreset:
    try:
        post = frontmatter.loads(text)
    except Exception as exc:  # yaml errors surface with parser-specific types
        raise AgentPresetError(f"Failed to parse preset {path or '<text>'}: {exc}") from exc
    metadata = dict(post.metadata)
    metadata["body"] = post.content.strip()
    metadata["path"] = str(path) if path else None
    try:
        return AgentPreset(**metadata)
    except ValidationError as exc:
        raise AgentPresetError(f"Invalid preset {path or '<text>'}: {exc}") from exc


def load_preset(path: str) -> AgentPreset:
    preset_path = Path(path).expanduser()
    if not preset_path.is_file():
        raise AgentPresetError(f"Preset file '{preset_path}' not found.")
    return _parse_preset_text(preset_path.read_text(), preset_path)


def list_presets(directory: Optional[Path] = None) -> List[AgentPreset]:
    """Presets found in ``directory`` (the runtime preset dir by default)."""
    base = directory or constants.PRESET_DIR
    if not base.exists():
        return []
    return [_parse_preset_text(file.read_text(), file) for file in sorted(base.glob("*.md"))]


def import_preset(
    path: str, service: Optional[AgentConfigService] = None
) -> Tuple[NamedAgent, bool]:
    """Create or update the named agent a preset describes.

    Returns the agent and whether it was newly created.
    """
    preset = load_preset(path)
    service = service or AgentConfigService()

    existing = service.find_named_agent_by_name(preset.name)
    if existing:
        agent = service.update_named_agent(existing.id, provider=preset.provider, model=preset.model)
        return agent, False
    return service.create_named_agent(preset.name, preset.provider, preset.model), True
