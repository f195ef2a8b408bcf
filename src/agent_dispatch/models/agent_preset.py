"""Named-agent preset representation."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class AgentPreset(BaseModel):
    """Named agent described by a markdown file with front matter."""

    name: str
    provider: str
    model: str
    description: Optional[str] = None
    body: str = ""
    path: Optional[str] = None
