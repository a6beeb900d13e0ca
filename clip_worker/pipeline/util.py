import os
import re
import tempfile
from typing import Any, Dict, Type

from pydantic import BaseModel


DEFAULT_DATA_DIR = "/app/data"


def get_data_dir() -> str:
    """Get data directory from environment"""
    return os.getenv("DATA_DIR", DEFAULT_DATA_DIR)


def ensure_dir(path: str):
    """Ensure directory exists"""
    os.makedirs(path, exist_ok=True)


def work_dir(prefix: str, data_dir: str = None) -> tempfile.TemporaryDirectory:
    """Temporary working directory under DATA_DIR, removed on exit"""
    base = os.path.join(data_dir or get_data_dir(), "tmp")
    ensure_dir(base)
    return tempfile.TemporaryDirectory(prefix=f"{clean_filename(prefix)}-", dir=base)


def clean_filename(filename: str) -> str:
    """Clean filename for safe filesystem usage"""
    # Remove or replace unsafe characters
    filename = re.sub(r'[<>:"/\\|?*]', '_', filename)
    # Remove multiple underscores
    filename = re.sub(r'_+', '_', filename)
    # Remove leading/trailing underscores and dots
    filename = filename.strip('_.')
    return filename or 'unnamed'


def format_bytes(num_bytes: float) -> str:
    """Human readable byte count, e.g. 1.5GB"""
    for unit in ("B", "KB", "MB", "GB"):
        if abs(num_bytes) < 1024 or unit == "GB":
            if unit == "B":
                return f"{int(num_bytes)}B"
            return f"{num_bytes:.1f}{unit}"
        num_bytes /= 1024
    return f"{num_bytes:.1f}GB"


def strict_json_schema(model: Type[BaseModel]) -> Dict[str, Any]:
    """JSON schema for OpenAI structured outputs (additionalProperties: false everywhere)"""

    def add_additional_properties_false(obj):
        if isinstance(obj, dict):
            if obj.get("type") == "object":
                obj["additionalProperties"] = False
            for value in obj.values():
                add_additional_properties_false(value)
        elif isinstance(obj, list):
            for item in obj:
                add_additional_properties_false(item)

    schema = model.model_json_schema()
    add_additional_properties_false(schema)
    return schema
