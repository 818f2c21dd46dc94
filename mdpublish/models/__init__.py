from .base import Base
from .document_versions import DocumentVersion
from .documents import Document
from .members import MemberRole, ProjectMember
from .projects import Project
from .publishes import Publish
from .users import User

__all__ = [
    "Base",
    "Document",
    "DocumentVersion",
    "MemberRole",
    "Project",
    "ProjectMember",
    "Publish",
    "User",
]
