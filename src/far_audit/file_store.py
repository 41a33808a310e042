import json
from pathlib import Path
from typing import Dict, Optional

from loguru import logger


CONFIG_KEYS = ("app_config", "llm_config", "di_config", "gl_files")


class FileConfigStore:
    """JSON file holding named config blobs, used when SQLite is not configured."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> Dict:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Config file {self.path} unreadable: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def load_all(self) -> Dict[str, Dict]:
        data = self._read()
        return {k: data[k] for k in CONFIG_KEYS if isinstance(data.get(k), dict)}

    def get(self, key: str) -> Optional[Dict]:
        value = self._read().get(key)
        return value if isinstance(value, dict) else None

    def save(self, key: str, value: Dict):
        data = self._read()
        data[str(key)] = value or {}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.warning(f"Could not write config file {self.path}: {e}")
