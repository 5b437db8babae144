# config.py
# Configurações globais e leitura de YAML

from typing import Dict, Any, Optional
from urllib.parse import urlparse
import logging
import os

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "database_url": None,
    "database_path": None,
    "pool_size": 10,
    "transaction_timeout": 15,
    "busy_timeout_ms": 30000,
    "upload_dir": None,
    "upload_url_prefix": "/uploads",
    "host": "0.0.0.0",
    "port": 3000,
    "log_level": "INFO",
    "log_dir": None,
    "admin_email": None,
    "admin_password": None,
    "admin_name": "Admin",
}

# Variáveis de ambiente que sobrescrevem o arquivo YAML
_ENV_OVERRIDES = {
    "DATABASE_URL": "database_url",
    "STOREFRONT_DB_PATH": "database_path",
    "STOREFRONT_UPLOAD_DIR": "upload_dir",
    "STOREFRONT_LOG_DIR": "log_dir",
    "STOREFRONT_LOG_LEVEL": "log_level",
    "STOREFRONT_ADMIN_EMAIL": "admin_email",
    "STOREFRONT_ADMIN_PASSWORD": "admin_password",
    "PORT": "port",
}

_NETWORK_SCHEMES = ("postgres", "postgresql")


def get_app_data_directory() -> str:
    """
    Retorna o diretório de dados da aplicação.
    STOREFRONT_DATA_DIR tem prioridade; senão usa ~/.storefront
    """
    app_data_dir = os.getenv("STOREFRONT_DATA_DIR") or os.path.join(os.path.expanduser("~"), ".storefront")
    os.makedirs(app_data_dir, exist_ok=True)
    return app_data_dir


def get_config_path() -> str:
    return os.path.join(get_app_data_directory(), "config.yaml")


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Carrega as configurações do arquivo YAML, aplicando padrões e variáveis de ambiente.

    Returns:
        Dict[str, Any]: Dicionário com as configurações
    """
    path = path or get_config_path()
    config = dict(DEFAULT_CONFIG)
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            config.update(yaml.safe_load(f) or {})

    for env_name, key in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            config[key] = value

    config["port"] = int(config["port"])
    config["pool_size"] = int(config["pool_size"])
    config["transaction_timeout"] = float(config["transaction_timeout"])
    config["busy_timeout_ms"] = int(config["busy_timeout_ms"])
    return config


def save_config(data: Dict[str, Any], path: Optional[str] = None) -> None:
    """
    Salva as configurações no arquivo YAML.

    Args:
        data: Dicionário com as configurações para salvar
    """
    with open(path or get_config_path(), "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, allow_unicode=True)


def is_network_database_url(url: Optional[str]) -> bool:
    """Verifica se a URL é uma string de conexão de rede válida (PostgreSQL)"""
    if not url or not isinstance(url, str):
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in _NETWORK_SCHEMES and bool(parsed.hostname)


def get_database_url(config: Dict[str, Any]) -> Optional[str]:
    """
    Retorna a URL do banco em rede, ou None para usar o banco local.
    Uma URL malformada é ignorada com aviso.
    """
    url = config.get("database_url")
    if not url:
        return None
    if is_network_database_url(url):
        return url.strip()
    logger.warning("database_url inválida ignorada, usando banco local")
    return None


def get_database_path(config: Dict[str, Any]) -> str:
    """Retorna o caminho do arquivo SQLite, criando o diretório se preciso"""
    db_path = config.get("database_path") or os.path.join(get_app_data_directory(), "storefront.db")
    db_path = os.path.abspath(db_path)
    os.makedirs(os.path.dirname(db_path), exist_ok=True)
    return db_path


def get_upload_dir(config: Dict[str, Any]) -> str:
    upload_dir = config.get("upload_dir") or os.path.join(get_app_data_directory(), "uploads")
    upload_dir = os.path.abspath(upload_dir)
    os.makedirs(upload_dir, exist_ok=True)
    return upload_dir
