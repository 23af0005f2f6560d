# app/__init__.py
"""
Guardrail firewall package. Keep this file free of imports so that loading a
single submodule (a store, an oracle client) never pulls in the web app.

    from app.main import create_app
    uvicorn app.main:app
"""
