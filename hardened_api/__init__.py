# hardened_api/__init__.py
"""
Security-hardened greeting server.

Keep this file minimal; import submodules directly:
    from hardened_api.main import create_app
Run with:
    python -m hardened_api
"""

__version__ = "1.0.0"
