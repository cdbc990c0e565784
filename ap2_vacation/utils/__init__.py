"""
AP2 Vacation Booking - Utilities Module
"""

from .logger import get_logger, log_a2a_message, log_mandate_event, log_llm_call, log_payment_event, log_transition
from .crypto import (
    MandateIntegrityService,
    Signer,
    HmacSigner,
    EcdsaSigner,
    EcdsaVerifier,
    build_signer_from_config,
    canonicalize,
    digest,
    generate_transaction_id,
    generate_authorization_code,
)
from .identity import (
    CALLER_IDENTITY_KEY,
    AgentCredential,
    IdentityVerifier,
    AllowListVerifier,
    default_shopping_credential,
    default_verifier,
)
from .a2a_client import (
    A2AClient,
    A2AMessageBuilder,
    AgentTransport,
    LocalTransport,
    new_envelope,
    find_data,
    all_text,
    extract_mandate_from_message,
    parse_envelope,
    build_a2a_request,
    build_a2a_response,
    error_to_jsonrpc,
    message_from_response,
)

__all__ = [
    # Logger
    'get_logger',
    'log_a2a_message',
    'log_mandate_event',
    'log_llm_call',
    'log_payment_event',
    'log_transition',
    # Crypto
    'MandateIntegrityService',
    'Signer',
    'HmacSigner',
    'EcdsaSigner',
    'EcdsaVerifier',
    'build_signer_from_config',
    'canonicalize',
    'digest',
    'generate_transaction_id',
    'generate_authorization_code',
    # Identity
    'CALLER_IDENTITY_KEY',
    'AgentCredential',
    'IdentityVerifier',
    'AllowListVerifier',
    'default_shopping_credential',
    'default_verifier',
    # A2A
    'A2AClient',
    'A2AMessageBuilder',
    'AgentTransport',
    'LocalTransport',
    'new_envelope',
    'find_data',
    'all_text',
    'extract_mandate_from_message',
    'parse_envelope',
    'build_a2a_request',
    'build_a2a_response',
    'error_to_jsonrpc',
    'message_from_response',
]
