# errors.py
# Hierarquia de erros do núcleo da loja (mapeada para códigos HTTP pelo web_server)


class StoreError(Exception):
    """Erro base do sistema"""
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(StoreError):
    """Entrada ausente ou malformada (nunca repetir)"""
    status_code = 400


class AuthError(StoreError):
    """Credenciais inválidas"""
    status_code = 401


class NotFoundError(StoreError):
    """Registro inexistente"""
    status_code = 404


class ConflictError(StoreError):
    """Violação de chave única (e-mail, nome de produto)"""
    status_code = 409


class TransientStoreError(StoreError):
    """Falha de conexão/transação; a operação inteira pode ser repetida"""
    status_code = 503


class StartupError(StoreError):
    """Banco de dados indisponível na inicialização (fatal)"""
