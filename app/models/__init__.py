"""SQLAlchemy models.

Note: Products are NOT stored locally.
They are fetched from the catalog backend API in real-time.
"""

from app.models.credential import ApiCredential, CredentialStatus
from app.models.page import PageSettings

__all__ = [
    "ApiCredential",
    "CredentialStatus",
    "PageSettings",
]
