"""
Observatório - Case Catalog Sync & Access Control
=================================================

Service layer for the social-innovation case catalog:
1. Session persistence and the login/logout state machine
2. Capability-based permissions (visitante / aluno_extensao / pesquisador + admin/root)
3. Case repository with local and remote backing stores
4. Moderation of comments, suggestions and access requests

Everything runs on a single asyncio loop; consumers subscribe to change notifiers.
"""

__version__ = "1.0.0"
