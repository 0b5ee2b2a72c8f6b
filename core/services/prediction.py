"""
Request-level orchestration for prediction generation and saving.

Stage order per request: form access, usage check, text generation, image
(asset pool for anonymous callers, fresh otherwise), tiered variants,
persistence (registered only), usage increment, response.

Everything after text generation is best-effort. Persistence and the usage
increment are independent writes: a failure between them can leave a counter
bumped without a stored result or the reverse. `reconcile_usage` reports such
drift after the fact.
"""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from core.config import Settings, logger
from core.context import Identity, RequestContext
from core.errors import GenerationError, IncompleteResultError, PredictionRejected, ValidationIssue
from core.models import PredictionResult
from core.services.asset_pool import (
    AssetMatchCriteria,
    add_asset_to_pool,
    extract_question_theme,
    generate_cosmic_placeholder,
    get_asset_from_pool,
)
from core.services.form_access import check_form_access
from core.services.generation import CharacterResult, build_image_prompt
from core.services.image_optimization import (
    ImageVariants,
    get_image_for_user_tier,
    image_size_info,
    is_valid_image_data_uri,
    safe_optimize_image_for_user_tier,
)
from core.services.usage_tracking import check_usage_limit, increment_usage
from core.validators import (
    MAX_SAVED_IMAGE_LENGTH,
    validate_optional_text,
    validate_prediction_input,
    validate_required_text,
)

SOURCE_AI = "ai"
SOURCE_ASSET_POOL = "asset_pool"
SOURCE_GUEST_SAVED = "guest_saved"


@dataclass(frozen=True)
class PredictionRequest:
    name: str
    month: str
    year: str
    question: str
    form_type: str = "fortune"


@dataclass(frozen=True)
class SavePredictionRequest:
    name: str
    month: str
    year: str
    question: str
    character_name: str
    character_description: str
    prediction: str
    character_image: Optional[str] = None


def invalid_request(message: str, details: Optional[list] = None) -> PredictionRejected:
    return PredictionRejected(
        400,
        "INVALID_REQUEST",
        "Invalid cosmic coordinates",
        message,
        extra={"details": details} if details else None,
    )


def _generation_failed() -> PredictionRejected:
    return PredictionRejected(
        503,
        "AI_GENERATION_FAILED",
        "Cosmic interference detected",
        "The oracle is experiencing mystical disturbances. Please try again in a few moments.",
    )


def calculate_age(year: int, month: int, today: Optional[date] = None) -> int:
    today = today or date.today()
    age = today.year - year
    if today.month < month:
        age -= 1
    return age


def prediction_prefix(name: str, year: str, month: str, today: Optional[date] = None) -> str:
    prefix = f"Hi {name}!"
    if calculate_age(int(year), int(month), today) < 12:
        prefix += " You are just born I guess. But I will still tell your future:"
    return prefix


class PredictionService:
    def __init__(self, settings: Settings, character_generator, image_generator, rng=None):
        self.settings = settings
        self.character_generator = character_generator
        self.image_generator = image_generator
        self.rng = rng

    async def generate(self, db, request: PredictionRequest, context: RequestContext) -> dict:
        """Run one generation request; every rejection surfaces as PredictionRejected."""
        try:
            return await self._generate(db, request, context)
        except PredictionRejected:
            raise
        except Exception:
            logger.exception("Prediction request failed unexpectedly")
            raise PredictionRejected(
                500,
                "INTERNAL_ERROR",
                "Unexpected cosmic disturbance",
                "An unexpected cosmic disturbance occurred. Please try again later.",
            )

    async def _generate(self, db, request: PredictionRequest, context: RequestContext) -> dict:
        try:
            validate_prediction_input(
                request.name, request.month, request.year, request.question, request.form_type
            )
        except ValidationIssue as exc:
            raise invalid_request(
                "Please provide valid name, birth details, and question.",
                details=[{"field": exc.field, "type": exc.error_type, "message": str(exc)}],
            )
        prefix = prediction_prefix(request.name, request.year, request.month)

        settings = self.settings
        user_tier = context.user_tier
        if not check_form_access(request.form_type, user_tier, settings):
            raise PredictionRejected(
                403,
                "FORM_ACCESS_DENIED",
                "Mystical form restricted",
                "This type of cosmic wisdom requires registration to access.",
            )

        usage = check_usage_limit(db, context.usage_key, context.is_registered, settings)
        if not usage.can_generate:
            raise PredictionRejected(
                429,
                "USAGE_LIMIT_EXCEEDED",
                "Daily cosmic limit reached",
                usage.message or "Daily limit reached.",
                extra={"used": usage.used, "limit": usage.limit},
            )

        theme = extract_question_theme(request.question)
        character = await self._generate_character(request)

        character_name = character.character_name
        character_description = character.character_description
        generation_source = SOURCE_AI
        image = ""

        if not context.is_registered:
            asset = get_asset_from_pool(
                db,
                AssetMatchCriteria(
                    question_theme=theme,
                    form_type=request.form_type,
                    exclude_recently_used=True,
                    client_identifier=context.client_ip,
                ),
                settings,
                rng=self.rng,
            )
            if asset is not None:
                image = asset.image_url
                character_name = asset.character_name
                character_description = asset.character_description
                generation_source = SOURCE_ASSET_POOL

        if not image:
            image = await self._generate_image(character, theme)
            if image and not context.is_registered:
                add_asset_to_pool(
                    db,
                    image_url=image,
                    character_name=character_name,
                    character_description=character_description,
                    question_theme=theme,
                    form_type=request.form_type,
                    metadata={
                        "generated_at": datetime.utcnow().isoformat(),
                        "source": "unregistered_user",
                    },
                )

        if not image:
            image = generate_cosmic_placeholder(character_name, theme)

        variants = await self._optimize(image, user_tier)
        final_image = get_image_for_user_tier(variants, user_tier) if variants else image

        saved = False
        if context.identity is not None:
            saved = self._persist_result(
                db,
                context,
                request,
                character_name=character_name,
                character_description=character_description,
                prediction_text=character.prediction,
                variants=variants,
                theme=theme,
                generation_source=generation_source,
            )

        if not increment_usage(db, context.usage_key, context.is_registered):
            logger.warning(
                "Usage increment failed after successful generation",
                extra={"user_type": context.user_type, "usage_key": context.usage_key},
            )

        return {
            "characterName": character_name,
            "characterDescription": character_description,
            "characterImage": final_image,
            "prediction": f"{prefix} {character.prediction}",
            "metadata": {
                "userType": context.user_type,
                "userTier": user_tier,
                "usageRemaining": usage.limit - usage.used - 1,
                "formType": request.form_type,
                "generationSource": generation_source,
                "hasOptimizedImages": variants is not None,
                "savedToDatabase": saved,
                "imageSizeInfo": image_size_info(variants),
            },
        }

    async def _generate_character(self, request: PredictionRequest) -> CharacterResult:
        try:
            return await self.character_generator.generate(
                request.name, request.month, request.year, request.question
            )
        except IncompleteResultError as exc:
            logger.error(f"Character generation incomplete: {exc}")
            raise PredictionRejected(
                500,
                "INCOMPLETE_RESULT",
                "Incomplete cosmic vision",
                "The oracle's vision was incomplete. Please try again.",
            )
        except GenerationError as exc:
            logger.error(f"AI prediction failed: {exc}")
            raise _generation_failed()
        except Exception:
            logger.exception("Character generator raised an unexpected error")
            raise _generation_failed()

    async def _generate_image(self, character: CharacterResult, theme: str) -> str:
        try:
            image = await self.image_generator.generate(build_image_prompt(character, theme))
        except Exception as exc:
            logger.error(f"Image generation failed, using placeholder: {exc}")
            return ""
        return image or ""

    async def _optimize(self, image: str, user_tier: str) -> Optional[ImageVariants]:
        if not is_valid_image_data_uri(image):
            return None
        try:
            return await asyncio.to_thread(
                safe_optimize_image_for_user_tier, image, user_tier, self.settings
            )
        except Exception as exc:
            logger.error(f"Image optimization failed, using original: {exc}")
            return None

    def _persist_result(
        self,
        db,
        context: RequestContext,
        request: PredictionRequest,
        *,
        character_name: str,
        character_description: str,
        prediction_text: str,
        variants: Optional[ImageVariants],
        theme: str,
        generation_source: str,
    ) -> bool:
        now = datetime.utcnow()
        try:
            db.add(
                PredictionResult(
                    user_id=context.identity.user_id,
                    client_ip=context.client_ip,
                    form_type=request.form_type,
                    user_name=request.name,
                    question=request.question,
                    birth_month=request.month,
                    birth_year=request.year,
                    character_name=character_name,
                    character_description=character_description,
                    prediction_text=prediction_text,
                    image_variants=variants.to_dict() if variants else None,
                    question_theme=theme,
                    generation_source=generation_source,
                    usage_count=1,
                    last_used_at=now,
                    is_active=True,
                    metadata_={
                        "generated_at": now.isoformat(),
                        "client_ip": context.client_ip,
                        "user_type": context.user_type,
                        "user_tier": context.user_tier,
                        "optimization_success": variants is not None,
                    },
                )
            )
            db.commit()
            return True
        except Exception as exc:
            logger.error(f"Database save failed: {exc}")
            db.rollback()
            return False


def _content_hash(user_id: str, payload: SavePredictionRequest) -> str:
    raw = f"{user_id}-{payload.character_name}-{payload.prediction}-{payload.question}"
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")[:20]


def save_prediction(db, identity: Identity, payload: SavePredictionRequest, client_ip: str) -> dict:
    """Persist a result generated during a guest session, once per identical content."""
    validate_prediction_input(payload.name, payload.month, payload.year, payload.question, "fortune")
    validate_required_text(payload.character_name, "characterName", 200)
    validate_required_text(payload.character_description, "characterDescription", 10000)
    validate_required_text(payload.prediction, "prediction", 10000)
    validate_optional_text(payload.character_image, "characterImage", MAX_SAVED_IMAGE_LENGTH)

    existing = (
        db.query(PredictionResult.id)
        .filter(PredictionResult.user_id == identity.user_id)
        .filter(PredictionResult.character_name == payload.character_name)
        .filter(PredictionResult.prediction_text == payload.prediction)
        .filter(PredictionResult.question == payload.question)
        .first()
    )
    if existing:
        return {
            "success": True,
            "message": "Prediction already saved",
            "predictionId": existing[0],
            "alreadyExists": True,
        }

    now = datetime.utcnow()
    result = PredictionResult(
        user_id=identity.user_id,
        client_ip=client_ip,
        form_type="fortune",
        user_name=payload.name,
        question=payload.question,
        birth_month=payload.month,
        birth_year=payload.year,
        character_name=payload.character_name,
        character_description=payload.character_description,
        prediction_text=payload.prediction,
        image_variants={"saved_from_guest": payload.character_image} if payload.character_image else None,
        question_theme=extract_question_theme(payload.question),
        generation_source=SOURCE_GUEST_SAVED,
        usage_count=1,
        last_used_at=now,
        is_active=True,
        metadata_={
            "saved_at": now.isoformat(),
            "saved_from_guest_session": True,
            "client_ip": client_ip,
            "user_type": "registered",
            "content_hash": _content_hash(identity.user_id, payload),
        },
    )
    db.add(result)
    db.commit()
    db.refresh(result)
    return {
        "success": True,
        "message": "Prediction saved successfully",
        "predictionId": result.id,
    }
