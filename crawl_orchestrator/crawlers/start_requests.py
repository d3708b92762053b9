"""
Start-task file loading.

The start file is a JSON array of request objects, e.g.::

    [
        {"url": "https://example.com/list?page=1"},
        {"url": "https://example.com/search", "method": "POST",
         "parameters": {"q": "memory"}, "priority": 5}
    ]
"""

import json
from pathlib import Path
from typing import List, Optional

from jsonschema import validate, ValidationError

from crawl_orchestrator.concurrent.models import Task, HTTP_METHODS
from crawl_orchestrator.utils.errors import ConfigurationError
from crawl_orchestrator.utils.logging import get_logger


logger = get_logger(__name__)

START_REQUESTS_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "url": {"type": "string", "minLength": 1},
            "method": {"type": "string", "enum": list(HTTP_METHODS) + [m.lower() for m in HTTP_METHODS]},
            "referer": {"type": "string"},
            "headers": {"type": "object", "additionalProperties": {"type": "string"}},
            "cookies": {"type": "object", "additionalProperties": {"type": "string"}},
            "parameters": {"type": "object"},
            "charset": {"type": "string"},
            "priority": {"type": "integer"},
            "use_proxy": {"type": "boolean"},
            "metadata": {"type": "object"}
        },
        "required": ["url"],
        "additionalProperties": False
    }
}


def load_start_tasks(path: Optional[str]) -> List[Task]:
    """
    Load start tasks from a JSON start file.

    Args:
        path: Start file path; None disables loading

    Returns:
        Tasks in file order; empty when the file does not exist

    Raises:
        ConfigurationError: If the file is not valid JSON or violates the schema
    """
    if not path:
        return []

    start_path = Path(path)
    if not start_path.is_file():
        logger.info(f"Start file {path} not found")
        return []

    try:
        with open(start_path, 'r', encoding='utf-8') as f:
            entries = json.load(f)
        validate(instance=entries, schema=START_REQUESTS_SCHEMA)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Start file {path} is not valid JSON", {"error": str(e)}) from e
    except ValidationError as e:
        raise ConfigurationError(f"Start file {path} is invalid: {e.message}", {"path": list(e.path)}) from e

    tasks = [Task.from_dict(entry) for entry in entries]
    logger.info(f"Loaded {len(tasks)} start tasks from {path}")
    return tasks
