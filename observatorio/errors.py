"""
Shared error types.

Kept in a separate module so every layer (auth, repository, moderation, stores,
API) raises and catches the same classes.
"""


class ObservatorioError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class InvalidCredentials(ObservatorioError):
    """Credenciais inválidas"""


class AccountDisabled(ObservatorioError):
    """Conta desativada"""


class PermissionDenied(ObservatorioError):
    """Permissão negada"""


class RootProtected(ObservatorioError):
    """O usuário root não pode ser desativado ou removido"""


class DemoModeBlocked(ObservatorioError):
    """Operação bloqueada no modo demonstração"""


class NotFound(ObservatorioError):
    """Registro não encontrado"""


class DuplicateEmail(ObservatorioError):
    """Email já cadastrado"""


class ValidationError(ObservatorioError):
    """Dados inválidos"""


class AlreadyProcessed(ObservatorioError):
    """Solicitação já foi processada"""


class RemoteUnavailable(ObservatorioError):
    """Serviço remoto indisponível"""
