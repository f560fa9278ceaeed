"""
Prompt Management Service.

Centralizes all prompts in YAML files for easy management and updates.
"""
import logging
import os
import yaml
from typing import Optional, Dict, Any
from functools import lru_cache

logger = logging.getLogger(__name__)

# Path to prompts directory
PROMPTS_DIR = os.path.join(os.path.dirname(__file__), "..", "prompts")


@lru_cache(maxsize=50)
def _load_prompt_file(name: str) -> Optional[Dict[str, Any]]:
    """Load a prompt from YAML file with caching."""
    file_path = os.path.join(PROMPTS_DIR, f"{name}.yaml")

    if not os.path.exists(file_path):
        logger.warning("Prompt file not found: %s", file_path)
        return None

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error("Error loading prompt %s: %s", name, e)
        return None


def get_prompt(name: str, variant: str, **kwargs) -> str:
    """
    Get a prompt template by file name and variant key, with variables filled in.

    Args:
        name: Name of the prompt file (without .yaml extension)
        variant: Key inside the file (e.g. the question type)
        **kwargs: Variables to interpolate into the prompt

    Returns:
        The rendered prompt, or "" if the file or variant is missing
    """
    prompt_data = _load_prompt_file(name)
    if not prompt_data:
        return ""

    template = prompt_data.get(variant) or prompt_data.get("default", "")
    if kwargs and template:
        try:
            template = template.format(**kwargs)
        except KeyError as e:
            logger.warning("Prompt %s/%s is missing variable %s", name, variant, e)
    return template.strip()


def clear_cache():
    """Clear the prompt cache (useful after updating YAML files)."""
    _load_prompt_file.cache_clear()
