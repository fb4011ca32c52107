"""
logging_config.py
-----------------
Configuración central del logging. Se llama una vez desde el lifespan
de main.py; cada módulo usa logging.getLogger(__name__) con su prefijo
[Componente] en los mensajes.
"""

import logging

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configura el root logger solo si nadie lo configuró antes (uvicorn, pytest)."""
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # httpx loguea cada request en INFO, demasiado ruido para el webhook
    logging.getLogger("httpx").setLevel(logging.WARNING)
