# app.py
# Inicialização: configuração -> logs -> banco -> migração de senhas -> servidor web

import sys
from typing import Any, Dict, Optional

from storefront.config import get_upload_dir, load_config
from storefront.database import Database, open_database
from storefront.errors import StartupError
from storefront.logger import configure_logging, log_error, log_event, log_startup
from storefront.services import CatalogStore, CredentialStore, OrderService
from storefront.uploads import UploadStore
from storefront.web_server import WebServer


def build_server(db: Database, config: Dict[str, Any]) -> WebServer:
    """Monta os serviços sobre o banco já aberto (uma instância compartilhada)"""
    credentials = CredentialStore(db)
    catalog = CatalogStore(db)
    orders = OrderService(db, catalog)
    uploads = UploadStore(get_upload_dir(config), config.get("upload_url_prefix", "/uploads"))
    return WebServer(credentials, catalog, orders, uploads, host=config["host"], port=config["port"])


def prepare_database(db: Database, config: Dict[str, Any]) -> None:
    credentials = CredentialStore(db)
    credentials.migrate_legacy()
    if config.get("admin_email") and config.get("admin_password"):
        if credentials.ensure_admin(config["admin_email"], config["admin_password"], config.get("admin_name") or "Admin"):
            log_event(f"👤 Administrador criado: {config['admin_email']}")


def main(config_path: Optional[str] = None) -> int:
    config = load_config(config_path)
    log_path = configure_logging(config.get("log_dir"), config.get("log_level", "INFO"))

    try:
        db = open_database(config)
    except StartupError as e:
        # Sem banco não há loja: encerra em vez de seguir degradado
        log_error("❌ ERRO CRÍTICO ao abrir o banco de dados", e)
        return 1

    log_startup(db.backend, log_path)
    try:
        prepare_database(db, config)
        build_server(db, config).run()
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
