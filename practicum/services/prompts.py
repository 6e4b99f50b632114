from functools import lru_cache
from pathlib import Path

import yaml

PROMPTS_DIR = Path(__file__).resolve().parents[1] / "prompts"


@lru_cache(maxsize=None)
def load_prompt(name: str) -> dict:
    """Load a YAML prompt file from practicum/prompts/."""
    with open(PROMPTS_DIR / name, encoding="utf-8") as f:
        return yaml.safe_load(f)
