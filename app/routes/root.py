"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter, Request


router = APIRouter()


@router.get("/")
async def root(request: Request):
    """Root endpoint with service info."""
    settings = request.app.state.settings
    return {
        "service": "CosmicQuirks",
        "version": "0.1.0",
        "description": "Whimsical fortune predictions with AI-generated characters",
        "daily_limits": dict(settings.daily_limits),
        "forms": {tier: list(forms) for tier, forms in settings.allowed_forms.items()},
        "endpoints": {
            "health": "/health",
            "prediction": "/api/prediction",
            "save_prediction": "/api/prediction/save",
            "usage": "/api/usage",
        },
    }
