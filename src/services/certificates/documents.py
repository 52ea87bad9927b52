"""
Certificate numbering and content documents
"""
import hashlib
import json
import uuid
from datetime import datetime, UTC
from typing import Any, Dict, Optional

from src.database.models import CertificateInstance

CONTENT_URI_SCHEME = "ipfs://"
PLACEHOLDER_HASH_PREFIX = "QmLocal"


def generate_certificate_number(prefix: str = "CERT", now: Optional[datetime] = None) -> str:
    """
    CERT-{year}-{12 hex chars}

    The random part comes from uuid4; the unique index on
    certificate_instances.certificate_number is the final guard.
    """
    now = now or datetime.now(UTC)
    return f"{prefix}-{now.year}-{uuid.uuid4().hex[:12].upper()}"


def build_certificate_document(instance: CertificateInstance) -> Dict[str, Any]:
    """JSON document pinned to the content store for a certificate instance."""
    return {
        "certificateInstanceId": instance.id,
        "certificateNumber": instance.certificate_number,
        "holderName": instance.holder_name,
        "holderId": instance.holder_student_id,
        "ruleName": instance.certificate_type,
        "organization": instance.organization,
        "description": instance.description or "",
        "issueDate": instance.issue_date.isoformat(),
        "timestamp": datetime.now(UTC).isoformat(),
        "image": instance.artifact_ref or "",
    }


def document_filename(certificate_number: str) -> str:
    return f"certificate_{certificate_number}.json"


def placeholder_content_hash(document: Dict[str, Any]) -> str:
    """Deterministic stand-in hash used when the content store is unreachable."""
    payload = json.dumps(document, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return PLACEHOLDER_HASH_PREFIX + hashlib.sha256(payload).hexdigest()[:40]


def to_content_uri(content_hash: str) -> str:
    if content_hash.startswith(CONTENT_URI_SCHEME):
        return content_hash
    return f"{CONTENT_URI_SCHEME}{content_hash}"
