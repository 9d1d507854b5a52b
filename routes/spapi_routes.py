from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query
from fastapi.responses import JSONResponse

import config
from auth.spapi_auth import SpApiAuthError
from services.app_services import AppServices, get_services
from services.order_models import iso_utc, utcnow
from services.order_parser import map_order_status, to_float
from services.spapi_client import SpApiError, resolve_spapi_host

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sp-api")

MARKETPLACE_INFO = {
    "A1VC38T7YXB528": {"name": "Amazon.co.jp", "country": "日本", "region": "us-west-2", "currency": "JPY", "language": "ja-JP"},
    "ATVPDKIKX0DER": {"name": "Amazon.com", "country": "アメリカ", "region": "us-east-1", "currency": "USD", "language": "en-US"},
    "A1PA6795UKMFR9": {"name": "Amazon.de", "country": "ドイツ", "region": "eu-west-1", "currency": "EUR", "language": "de-DE"},
    "A13V1IB3VIYZZH": {"name": "Amazon.fr", "country": "フランス", "region": "eu-west-1", "currency": "EUR", "language": "fr-FR"},
    "A1F83G8C2ARO7P": {"name": "Amazon.co.uk", "country": "イギリス", "region": "eu-west-1", "currency": "GBP", "language": "en-GB"},
}


def _troubleshooting(message: str) -> str:
    if "Token refresh failed" in message or "credentials" in message:
        return "Refresh Tokenが無効、期限切れ、または未設定です。LWA認証情報を確認してください。"
    if "403" in message:
        return "SP-APIへのアクセス権限がありません。Seller Centralでアプリケーションが承認されているか確認してください。"
    if "400" in message:
        return "マーケットプレイスIDが正しくないか、該当マーケットプレイスでの販売権限がありません。"
    return "一般的なエラーです。"


@router.get("/test")
async def test_connection(services: AppServices = Depends(get_services)):
    client = services.client
    missing = client.auth.missing_credentials()
    settings = {
        "hasRefreshToken": "LWA_REFRESH_TOKEN" not in missing,
        "hasClientId": "LWA_CLIENT_ID" not in missing,
        "hasClientSecret": "LWA_CLIENT_SECRET" not in missing,
        "region": config.SPAPI_REGION,
        "marketplace": client.marketplace_id,
        "endpoint": client.base_url,
        "useMockData": client.use_mock,
    }
    if missing and not client.use_mock:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "SP-API認証設定が不完全です",
                "missing": missing,
                "config": settings,
                "message": "必要な環境変数を.envに設定してください（またはUSE_MOCK_DATA=trueでモックモードを使用）",
            },
        )

    try:
        page = await asyncio.to_thread(
            client.get_orders,
            created_after=iso_utc(utcnow() - timedelta(days=7)),
            max_results_per_page=5,
        )
    except (SpApiAuthError, SpApiError) as exc:
        logger.error("[SpApi] Connection test failed: %s", exc)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": str(exc),
                "troubleshooting": _troubleshooting(str(exc)),
                "timestamp": iso_utc(utcnow()),
                "config": settings,
            },
        )

    sample = None
    if page.orders:
        first = page.orders[0]
        sample = {
            "id": first.amazon_order_id,
            "date": first.purchase_date,
            "status": map_order_status(first.order_status),
            "amount": to_float(first.order_total.amount if first.order_total else None),
        }
    return {
        "success": True,
        "mode": "mock" if client.use_mock else "live",
        "message": "SP-API認証・接続テスト成功",
        "config": settings,
        "data": {"ordersCount": len(page.orders), "sampleOrder": sample},
    }


@router.get("/marketplace")
def marketplace_info(marketplace_id: Optional[str] = Query(None, alias="id")):
    current = {"configuredRegion": config.SPAPI_REGION, "configuredMarketplace": config.MARKETPLACE_ID}
    if marketplace_id:
        info = MARKETPLACE_INFO.get(marketplace_id)
        if info is None:
            return JSONResponse(
                status_code=404,
                content={
                    "success": False,
                    "error": "指定されたMarketplace IDが見つかりません",
                    "marketplaceId": marketplace_id,
                },
            )
        return {
            "success": True,
            "marketplaceId": marketplace_id,
            **info,
            "endpoint": resolve_spapi_host(marketplace_id),
            "currentConfig": {
                **current,
                "isCorrectConfiguration": config.SPAPI_REGION == info["region"] and config.MARKETPLACE_ID == marketplace_id,
            },
        }
    return {
        "success": True,
        "marketplaces": [
            {"id": mp_id, **info, "endpoint": resolve_spapi_host(mp_id)} for mp_id, info in MARKETPLACE_INFO.items()
        ],
        "currentConfig": current,
    }


def register_spapi_routes(app: FastAPI) -> None:
    app.include_router(router)
