# logger.py
# Logger e auditoria

import logging
import os
import sys
from datetime import datetime
from typing import Optional

FORMAT = '%(asctime)s [%(levelname)s] %(message)s'

_logger = logging.getLogger("storefront")


def get_log_dir(log_dir: Optional[str] = None) -> str:
    """Retorna o diretório de logs (padrão: ~/.storefront/logs)"""
    log_dir = log_dir or os.path.expanduser('~/.storefront/logs')
    os.makedirs(log_dir, exist_ok=True)
    return log_dir


def configure_logging(log_dir: Optional[str] = None, level: str = "INFO") -> str:
    """Configura arquivo de log diário + saída no console. Retorna o caminho do arquivo."""
    log_path = os.path.join(get_log_dir(log_dir), f'storefront_{datetime.now().strftime("%Y%m%d")}.log')
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    logging.basicConfig(
        filename=log_path,
        level=numeric_level,
        format=FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S',
        encoding='utf-8'
    )

    # Adiciona também saída no console
    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(logging.Formatter(FORMAT, '%H:%M:%S'))
    logging.getLogger().addHandler(console_handler)
    return log_path


def log_event(msg: str):
    """Registra evento informativo"""
    _logger.info(msg)


def log_error(msg: str, exc: Exception = None):
    """Registra erro com traceback opcional"""
    if exc:
        _logger.error(f"{msg}: {str(exc)}", exc_info=exc)
    else:
        _logger.error(msg)


def log_warning(msg: str):
    """Registra aviso"""
    _logger.warning(msg)


def log_debug(msg: str):
    """Registra mensagem de debug"""
    _logger.debug(msg)


def log_startup(backend: str, log_path: str):
    """Registra informações de inicialização do sistema"""
    _logger.info("=" * 60)
    _logger.info("STOREFRONT - SISTEMA INICIADO")
    _logger.info("=" * 60)
    _logger.info(f"Versão Python: {sys.version}")
    _logger.info(f"Sistema Operacional: {sys.platform}")
    _logger.info(f"Banco de dados: {backend}")
    _logger.info(f"Arquivo de log: {log_path}")
    _logger.info("=" * 60)
