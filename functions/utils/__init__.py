"""
Utility helpers: config, LLM clients, text preparation, security.
"""

from .security_functions import detect_injection, ensure_safe_cv_text, scan_dict_for_injection
from .text_cleaner import prepare_for_ai

__all__ = [
    "detect_injection",
    "ensure_safe_cv_text",
    "scan_dict_for_injection",
    "prepare_for_ai",
]
