from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from pydantic import BaseModel

from gateway_app.auth import api_key_header, check_model_permission, get_api_key
from gateway_app.config import GatewaySettings
from gateway_app.db_models import ApiKey, epoch_seconds
from gateway_app.gateway import Gateway
from gateway_app.stores import PricingStore

router = APIRouter(prefix="/v1", tags=["gateway"])


class ModelItem(BaseModel):
    id: str
    object: str = "model"
    created: int
    owned_by: str


class ModelListResponse(BaseModel):
    object: str = "list"
    data: list[ModelItem]


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def get_pricing_store(request: Request) -> PricingStore:
    return request.app.state.pricing_store


def get_settings(request: Request) -> GatewaySettings:
    return request.app.state.settings


@router.post("/chat/completions")
async def chat_completions(
    request: Request,
    gateway: Gateway = Depends(get_gateway),
    authorization: str | None = Depends(api_key_header),
) -> Response:
    """
    OpenAI-compatible chat completions. The body is relayed as-is to the
    selected upstream; ``stream: true`` returns the upstream SSE stream.
    """
    raw_body = await request.body()
    return await gateway.handle_chat_completion(authorization, raw_body)


@router.get("/models", response_model=ModelListResponse)
async def list_models(
    api_key: ApiKey = Depends(get_api_key),
    pricing_store: PricingStore = Depends(get_pricing_store),
    settings: GatewaySettings = Depends(get_settings),
) -> ModelListResponse:
    configs = await pricing_store.list_enabled()
    return ModelListResponse(
        data=[
            ModelItem(
                id=config.model_id,
                created=epoch_seconds(config.created_at),
                owned_by=settings.models_owned_by,
            )
            for config in configs
            if check_model_permission(api_key.allowed_models, config.model_id)
        ]
    )
