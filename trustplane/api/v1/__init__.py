"""
API v1 package.

Contains versioned API routes for the Trust & Eligibility API.
"""

from trustplane.api.v1.routes import router

__all__ = ["router"]
