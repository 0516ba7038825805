"""
Pydantic Schemas for Observatório
=================================

Entities shared by the session layer, the case repository, the moderation
queue and the hosted functions. Field names follow the catalog vocabulary
(titulo, regiao, aprovado, ...) so persisted records stay readable by the
existing deployments.

Roles:
- visitante: browse approved cases, comment, suggest new cases
- aluno_extensao: extension student - registers and edits own cases
- pesquisador: researcher - everything a student does plus analytics/export

Admin and root are flags on top of a role, not roles themselves.
"""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware current time (default clock everywhere)."""
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class Environment(str, Enum):
    """Deployment environment - decides the case store at startup"""
    LOCAL = "local"
    HOSTED = "hosted"


class StoreBackend(str, Enum):
    """Backend for locally persisted state"""
    MEMORY = "memory"
    SQL = "sql"
    REDIS = "redis"


class Role(str, Enum):
    """Base roles"""
    VISITANTE = "visitante"
    ALUNO_EXTENSAO = "aluno_extensao"
    PESQUISADOR = "pesquisador"


class Capability(str, Enum):
    """Named permission units. Admin-only capabilities sit in no role table."""
    VIEW_ALL = "view_all"
    EXPORT_DATA = "export_data"
    CREATE_REPORTS = "create_reports"
    ANALYTICS = "analytics"
    VIEW_DASHBOARD = "view_dashboard"
    CREATE_CASE = "create_case"
    EDIT_OWN_CASE = "edit_own_case"
    VIEW_APPROVED = "view_approved"
    UPLOAD_MEDIA = "upload_media"
    COMMENT = "comment"
    SUGGEST_IMPROVEMENT = "suggest_improvement"
    SUGGEST_CASE = "suggest_case"
    VIEW_PUBLIC = "view_public"

    # Admin only
    APPROVE_CONTENT = "approve_content"
    DELETE_CASE = "delete_case"
    MANAGE_USERS = "manage_users"


class SuggestionStatus(str, Enum):
    """Suggestion lifecycle"""
    PENDENTE = "pendente"
    APROVADA = "aprovada"
    REJEITADA = "rejeitada"


class AccessRequestStatus(str, Enum):
    """Access request lifecycle"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AuthState(str, Enum):
    """Per-process authentication state machine"""
    ANONYMOUS = "anonymous"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    LOGGED_OUT = "logged_out"


# =============================================================================
# IDENTITY
# =============================================================================

class UserProfile(BaseModel):
    """Account fields shared by the registry record and the live identity"""
    id: str
    email: str
    name: str
    # Plain string so unknown roles from older records load (and get no capabilities)
    role: Optional[str] = Role.VISITANTE.value
    is_admin: bool = False
    is_root: bool = False
    active: bool = True
    must_change_password: bool = False
    demo: bool = False
    provider: Optional[str] = None  # social connection name
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    # Profile
    phone: Optional[str] = None
    institution: Optional[str] = None
    department: Optional[str] = None
    position: Optional[str] = None
    bio: Optional[str] = None


class UserRecord(UserProfile):
    """Registry entry. The hash never leaves the registry."""
    password_hash: Optional[str] = None

    def to_identity(self) -> "Identity":
        return Identity(**self.model_dump(exclude={"password_hash"}))


class Identity(UserProfile):
    """A logged-in principal (the session record)"""
    login_time: Optional[datetime] = None
    remember: bool = False
    session_id: Optional[str] = None


DEFAULT_NOTIFICATION_SETTINGS: Dict[str, bool] = {
    "new-cases": True,
    "case-comments": True,
    "newsletter": True,
    "system-updates": True,
}


# =============================================================================
# CASES
# =============================================================================

class CasoBase(BaseModel):
    """Case content - shared by cases and suggestions"""
    titulo: str = Field(..., min_length=1)
    categoria: str = ""
    regiao: str = ""
    organizacao: str = ""
    status: str = "Em andamento"
    descricao_resumo: str = ""
    descricao_completa: str = ""
    publico_alvo: str = ""
    beneficiarios: int = Field(0, ge=0)
    data_inicio: Optional[str] = None
    responsavel_cadastro: Optional[str] = None
    contato: Optional[str] = None
    site: Optional[str] = None
    metodologia: str = ""
    desafios: str = ""
    impactos: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def _unique_tags(cls, tags: List[str]) -> List[str]:
        # Set semantics, first occurrence wins
        seen = []
        for tag in tags:
            if tag not in seen:
                seen.append(tag)
        return seen


class Caso(CasoBase):
    """A cataloged social-innovation initiative"""
    id: Optional[int] = None
    aprovado: bool = False
    data_cadastro: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    user_id: Optional[str] = None  # owner, for edit_own_case


CASO_CONTENT_FIELDS = set(CasoBase.model_fields.keys())


class SearchFilters(BaseModel):
    """Exact-match filters for search_casos / remote list queries"""
    categoria: Optional[str] = None
    regiao: Optional[str] = None
    status: Optional[str] = None
    aprovado: Optional[bool] = None  # remote list only
    include_unapproved: bool = False


class CaseStats(BaseModel):
    """Derived statistics - always recomputed from the snapshot"""
    total_casos: int = 0
    casos_aprovados: int = 0
    casos_pendentes: int = 0
    categorias: int = 0
    regioes: int = 0
    organizacoes: int = 0
    beneficiarios: int = 0
    media_beneficiarios: int = 0
    taxa_aprovacao: int = 0  # percent
    por_categoria: List[Dict[str, Any]] = Field(default_factory=list)
    por_regiao: List[Dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# MODERATION
# =============================================================================

class Comentario(BaseModel):
    """Comment attached to exactly one case"""
    id: Optional[int] = None
    caso_id: int
    user_id: Optional[str] = None
    autor: Optional[str] = None
    texto: str = Field(..., min_length=1)
    created_at: Optional[datetime] = None
    aprovado: bool = False


class Sugestao(CasoBase):
    """Visitor-proposed case awaiting promotion"""
    id: Optional[int] = None
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    status: SuggestionStatus = SuggestionStatus.PENDENTE
    motivo_rejeicao: Optional[str] = None
    caso_id: Optional[int] = None  # set once, on approval
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None


class AccessRequest(BaseModel):
    """Request for an account with an elevated role"""
    id: Optional[int] = None
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    role: Role
    justification: str = Field(..., min_length=1)
    password_hash: Optional[str] = None
    status: AccessRequestStatus = AccessRequestStatus.PENDING
    requested_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    user_id: Optional[str] = None


# =============================================================================
# HOSTED FUNCTION PAYLOADS
# =============================================================================

class ComentarioCreate(BaseModel):
    """POST /api/comentarios"""
    caso_id: int
    texto: str = Field(..., min_length=1)


class ComentarioUpdate(BaseModel):
    """PUT /api/comentarios/{id}"""
    aprovado: bool


class AccessRequestCreate(BaseModel):
    """POST /api/access-requests"""
    name: str
    email: str
    role: str
    justification: str
    password: Optional[str] = None


class AccessRequestDecision(BaseModel):
    """PUT /api/access-requests/{id}"""
    action: str = Field(..., pattern="^(approve|reject)$")
    reason: Optional[str] = None
