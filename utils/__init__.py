# utils/__init__.py

from utils.logger import logger
from utils.config import load_cfg, resolve_env

__all__ = ["logger", "load_cfg", "resolve_env"]
