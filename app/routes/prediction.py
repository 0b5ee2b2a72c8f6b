"""
Prediction generation, saving, and usage endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from app.deps import get_db_session, get_settings, resolve_request_context
from core.config import Settings, logger
from core.errors import ValidationIssue
from core.services.prediction import (
    PredictionRequest,
    SavePredictionRequest,
    save_prediction,
)
from core.services.usage_tracking import get_user_usage_stats


router = APIRouter(prefix="/api")

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
}


class PredictionBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=50)
    month: str = Field(min_length=1, max_length=2)
    year: str = Field(min_length=4, max_length=4)
    question: str = Field(min_length=10, max_length=500)
    form_type: str = Field(default="fortune", alias="formType", min_length=1, max_length=50)


class SavePredictionBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=50)
    month: str = Field(min_length=1, max_length=2)
    year: str = Field(min_length=4, max_length=4)
    question: str = Field(min_length=10, max_length=500)
    character_name: str = Field(alias="characterName", min_length=1)
    character_description: str = Field(alias="characterDescription", min_length=1)
    prediction: str = Field(min_length=1)
    character_image: Optional[str] = Field(default=None, alias="characterImage")


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        {"error": "Authentication required", "message": message},
        status_code=401,
        headers=NO_STORE_HEADERS,
    )


@router.post("/prediction")
async def create_prediction(
    body: PredictionBody,
    request: Request,
    db=Depends(get_db_session),
):
    """Generate a character and prediction for the caller."""
    context = await resolve_request_context(request, db)
    service = request.app.state.prediction_service
    data = await service.generate(
        db,
        PredictionRequest(
            name=body.name,
            month=body.month,
            year=body.year,
            question=body.question,
            form_type=body.form_type,
        ),
        context,
    )
    return {"data": data, "error": None}


@router.post("/prediction/save")
async def save_prediction_route(
    body: SavePredictionBody,
    request: Request,
    db=Depends(get_db_session),
):
    """Persist a guest-session result for a signed-in user."""
    context = await resolve_request_context(request, db)
    if context.identity is None:
        return _unauthorized("You must be signed in to save predictions.")

    try:
        result = save_prediction(
            db,
            context.identity,
            SavePredictionRequest(
                name=body.name,
                month=body.month,
                year=body.year,
                question=body.question,
                character_name=body.character_name,
                character_description=body.character_description,
                prediction=body.prediction,
                character_image=body.character_image,
            ),
            context.client_ip,
        )
    except ValidationIssue as exc:
        return JSONResponse(
            {
                "error": "Invalid prediction data",
                "message": "The prediction data is incomplete or invalid.",
                "details": [{"field": exc.field, "type": exc.error_type, "message": str(exc)}],
            },
            status_code=400,
        )
    except Exception as exc:
        logger.error(f"Failed to save prediction: {exc}")
        db.rollback()
        return JSONResponse(
            {"error": "Save failed", "message": "Unable to save your prediction. Please try again."},
            status_code=500,
        )
    return JSONResponse(result, headers=NO_STORE_HEADERS)


@router.get("/usage")
async def usage_stats(
    request: Request,
    settings: Settings = Depends(get_settings),
    db=Depends(get_db_session),
):
    """Today's usage for a signed-in user."""
    context = await resolve_request_context(request, db)
    if context.identity is None:
        return _unauthorized("You must be signed in to view usage.")
    stats = get_user_usage_stats(db, context.identity.user_id, settings)
    if stats is None:
        return JSONResponse(
            {"error": "Usage unavailable", "message": "Unable to load usage right now."},
            status_code=503,
        )
    return JSONResponse(stats, headers=NO_STORE_HEADERS)
