"""
CSP Manager - Content-Security-Policy composition and delivery service
"""

__version__ = "0.1.0"

from csp_manager.policy.composer import HeaderValues, header_values, render_meta_tag
from csp_manager.policy.merger import merge_directives

__all__ = ["HeaderValues", "header_values", "merge_directives", "render_meta_tag"]
