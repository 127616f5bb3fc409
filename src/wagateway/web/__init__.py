"""
Web server module for the WhatsApp pairing gateway.

Provides a FastAPI application exposing the pairing API and serving the
pairing page.

Usage:
    from wagateway.web.server import app

    # Run with uvicorn:
    #   uvicorn wagateway.web.server:app --port 3000
"""
