"""
Middleware components for request processing.
"""

from app.middleware.cors import CORSMiddleware, setup_cors

__all__ = [
    "CORSMiddleware",
    "setup_cors",
]
