"""System prompts stored as markdown files in ``<config dir>/prompts``."""

import logging
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

NO_PROMPT = "None"


class PromptLibrary:
    """Named system prompts; the name is the file stem."""

    def __init__(self, prompts_dir: Path):
        self.prompts_dir = Path(prompts_dir)

    def available(self) -> List[str]:
        if not self.prompts_dir.is_dir():
            return []
        return sorted(path.stem for path in self.prompts_dir.glob("*.md"))

    def load(self, name: Optional[str]) -> Optional[str]:
        """Return the prompt text, or None when no prompt is selected or it does not exist."""
        if not name or name == NO_PROMPT:
            return None
        path = self.prompts_dir / f"{name}.md"
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.warning("Prompt '%s' not found in %s", name, self.prompts_dir)
            return None
