"""Identity issuance, validation and cross-domain correlation"""

from .secure_id import (
    generate_waitag_id,
    generate_session_id,
    is_valid_waitag_id
)
from .cross_domain import (
    CrossDomainTokenVerifier,
    FingerprintCorrelator,
    encode_handoff_token,
    decode_handoff_token
)

__all__ = [
    "generate_waitag_id",
    "generate_session_id",
    "is_valid_waitag_id",
    "CrossDomainTokenVerifier",
    "FingerprintCorrelator",
    "encode_handoff_token",
    "decode_handoff_token"
]
