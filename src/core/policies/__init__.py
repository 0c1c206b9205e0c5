from src.core.policies.compliance import compute_drift, validate_policy
from src.core.policies.models import (
    ComplianceResult,
    InvestmentPolicy,
    InvestmentPolicyPutRequest,
    InvestmentPolicyResponse,
    PolicyValidateRequest,
    PolicyValidationResult,
)
from src.core.policies.snapshot import PortfolioSnapshot

__all__ = [
    "ComplianceResult",
    "InvestmentPolicy",
    "InvestmentPolicyPutRequest",
    "InvestmentPolicyResponse",
    "PolicyValidateRequest",
    "PolicyValidationResult",
    "PortfolioSnapshot",
    "compute_drift",
    "validate_policy",
]
