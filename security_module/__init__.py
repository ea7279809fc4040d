"""Endpoint security: blocked-range validation, persisted policy, secrets at rest"""

from security_module.encryption import ParameterEncryption
from security_module.endpoint_validator import BLOCKED_RANGES, EndpointValidator, classify_address, extract_host
from security_module.policy import SecurityPolicyStore

__all__ = [
    "BLOCKED_RANGES",
    "EndpointValidator",
    "ParameterEncryption",
    "SecurityPolicyStore",
    "classify_address",
    "extract_host",
]
