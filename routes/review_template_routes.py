from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Body, Depends, FastAPI

from routes.error_handlers import error_response
from services.app_services import AppServices, get_services
from services.order_models import ReviewTemplate
from services.review_service import (
    SAMPLE_VALUES,
    TEMPLATE_VARIABLES,
    load_review_template,
    render_template,
    save_review_template,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings/review-template")


@router.get("")
async def get_review_template(services: AppServices = Depends(get_services)):
    template = await asyncio.to_thread(load_review_template, services.db_path)
    return {
        "success": True,
        "template": template.to_payload(),
        "defaultTemplate": ReviewTemplate().to_payload(),
        "variables": TEMPLATE_VARIABLES,
        "usage": {
            "endpoint": "POST /api/orders/review-request",
            "body": {"orderIds": ["..."], "type": "batch", "customTemplate": {"subject": "...", "mainMessage": "..."}},
        },
    }


@router.post("")
async def update_review_template(payload: dict = Body(default_factory=dict), services: AppServices = Depends(get_services)):
    if payload.get("action", "update") == "reset":
        template = await asyncio.to_thread(save_review_template, ReviewTemplate(), services.db_path)
        return {"success": True, "message": "テンプレートをデフォルトにリセットしました", "template": template.to_payload()}

    updates = payload.get("template")
    if not isinstance(updates, dict):
        return error_response(400, "有効なテンプレートオブジェクトを指定してください")
    unknown = [key for key in updates if key not in ReviewTemplate().to_payload()]
    if unknown:
        return error_response(400, "有効なテンプレートオブジェクトを指定してください", f"unknown fields: {', '.join(unknown)}")
    if any(not isinstance(value, str) for value in updates.values()):
        return error_response(400, "有効なテンプレートオブジェクトを指定してください", "template fields must be strings")

    current = await asyncio.to_thread(load_review_template, services.db_path)
    template = ReviewTemplate.model_validate({**current.to_payload(), **updates})
    await asyncio.to_thread(save_review_template, template, services.db_path)
    logger.info("[Review] Template updated: %s", ", ".join(sorted(updates)) or "no fields")
    return {
        "success": True,
        "message": "レビューテンプレートを更新しました",
        "template": template.to_payload(),
        "preview": render_template(template, SAMPLE_VALUES),
    }


def register_review_template_routes(app: FastAPI) -> None:
    app.include_router(router)
