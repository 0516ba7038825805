"""
Permission Engine (RBAC)
========================

Capability-based access control.

Roles:
- pesquisador: researcher - full read access, analytics, reports, export
- aluno_extensao: extension student - registers and edits own cases
- visitante: visitor - approved content, comments, case suggestions

Admin (and root, which implies admin) is a flag on top of any role and
receives every capability, including the admin-only ones
(approve_content, delete_case, manage_users).

Everything here is a pure function of the identity. Mutators elsewhere call
require_permission / require_admin before acting.
"""

from typing import Dict, FrozenSet, Optional

from .errors import PermissionDenied
from .schemas import Capability, Identity, Role

C = Capability

ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.PESQUISADOR: frozenset({
        C.VIEW_ALL, C.EXPORT_DATA, C.CREATE_REPORTS, C.ANALYTICS,
        C.VIEW_DASHBOARD, C.CREATE_CASE, C.EDIT_OWN_CASE, C.VIEW_APPROVED,
        C.UPLOAD_MEDIA, C.COMMENT, C.SUGGEST_IMPROVEMENT,
    }),
    Role.ALUNO_EXTENSAO: frozenset({
        C.CREATE_CASE, C.EDIT_OWN_CASE, C.VIEW_APPROVED, C.UPLOAD_MEDIA,
        C.VIEW_DASHBOARD, C.COMMENT, C.SUGGEST_IMPROVEMENT,
    }),
    Role.VISITANTE: frozenset({
        C.VIEW_APPROVED, C.SUGGEST_CASE, C.COMMENT, C.VIEW_PUBLIC,
    }),
}

UNIVERSAL_CAPABILITIES: FrozenSet[Capability] = frozenset(Capability)

ROLE_LABELS: Dict[Role, str] = {
    Role.PESQUISADOR: "Pesquisador",
    Role.ALUNO_EXTENSAO: "Aluno de Extensão",
    Role.VISITANTE: "Visitante",
}


def _role_of(identity: Identity) -> Optional[Role]:
    try:
        return Role(identity.role)
    except ValueError:
        return None


def is_admin(identity: Optional[Identity]) -> bool:
    """Admin flag or root (root implies admin)"""
    return identity is not None and (identity.is_admin or identity.is_root)


def capabilities_for(identity: Optional[Identity]) -> FrozenSet[Capability]:
    """
    Capability set of an identity.

    - No identity -> empty set
    - Admin/root -> universal set
    - Otherwise the role table; unknown or missing role -> empty set
    """
    if identity is None:
        return frozenset()
    if is_admin(identity):
        return UNIVERSAL_CAPABILITIES
    role = _role_of(identity)
    if role is None:
        return frozenset()
    return ROLE_CAPABILITIES[role]


def has_permission(identity: Optional[Identity], capability: Capability) -> bool:
    return capability in capabilities_for(identity)


def require_permission(identity: Optional[Identity], *capabilities: Capability) -> None:
    """
    Raise PermissionDenied unless the identity holds at least one of the
    given capabilities.
    """
    granted = capabilities_for(identity)
    if not any(c in granted for c in capabilities):
        names = ", ".join(c.value for c in capabilities)
        who = identity.email if identity else "anonymous"
        raise PermissionDenied(f"Permissão negada: {who} não possui {names}")


def require_admin(identity: Optional[Identity]) -> None:
    if not is_admin(identity):
        who = identity.email if identity else "anonymous"
        raise PermissionDenied(f"Permissão negada: {who} não é administrador")


def role_label(identity: Optional[Identity]) -> str:
    """Display name of the identity's role, with an "(Admin)" suffix for admins"""
    if identity is None:
        return ROLE_LABELS[Role.VISITANTE]
    role = _role_of(identity)
    label = ROLE_LABELS.get(role, ROLE_LABELS[Role.VISITANTE])
    if is_admin(identity) and role is not None:
        return f"{label} (Admin)"
    return label
