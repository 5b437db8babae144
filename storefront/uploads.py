# uploads.py
# Armazenamento dos arquivos de imagem enviados (bytes -> URL)

import os
import uuid
from typing import Optional

from werkzeug.utils import secure_filename

from storefront.errors import ValidationError
from storefront.logger import log_debug

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".avif"}


class UploadStore:
    def __init__(self, upload_dir: str, url_prefix: str = "/uploads"):
        self.upload_dir = upload_dir
        self.url_prefix = url_prefix.rstrip("/")
        os.makedirs(self.upload_dir, exist_ok=True)

    @staticmethod
    def _extension(filename: Optional[str]) -> str:
        ext = os.path.splitext(secure_filename(filename or ""))[1].lower()
        return ext if ext in ALLOWED_EXTENSIONS else ""

    def save(self, data: bytes, filename: Optional[str] = None) -> str:
        """
        Grava os bytes com nome derivado de um uuid4 (nunca do horário)
        e retorna a URL pública do arquivo.
        """
        if not data:
            raise ValidationError("Arquivo de imagem vazio")

        stored_name = f"{uuid.uuid4().hex}{self._extension(filename)}"
        path = os.path.join(self.upload_dir, stored_name)
        # 'xb' falha se o arquivo já existir em vez de sobrescrever
        with open(path, "xb") as f:
            f.write(data)
        log_debug(f"Imagem gravada: {path} ({len(data)} bytes)")
        return f"{self.url_prefix}/{stored_name}"
