# =============================================================================
# ai/ - Claude Integration
# =============================================================================
# - pii_redactor.py: Strip personal information before prompts leave the server
# - model_selector.py: Tier-based model choice
# - anthropic_client.py: Messages API client (httpx)
# - tools.py: Database, exam and diagram tools Claude can call
# - exam_validator.py: CAPS exam paper / question validation
# - proxy.py: Request orchestration (quota, tools, retry, usage logging)
# =============================================================================

from .anthropic_client import ClaudeAPIError, ClaudeClient, ClaudeResponse
from .exam_validator import ExamValidationError, validate_caps_exam
from .model_selector import ClaudeModel, select_model_for_tier
from .pii_redactor import redact_pii

__all__ = [
    "ClaudeAPIError",
    "ClaudeClient",
    "ClaudeResponse",
    "ClaudeModel",
    "ExamValidationError",
    "redact_pii",
    "select_model_for_tier",
    "validate_caps_exam",
]
