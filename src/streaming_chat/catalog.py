"""
Model catalog: resolves a model identifier to the upstream that serves it.

Users can register their own OpenAI-compatible APIs (URL + key) and attach
models to them. A model that is not registered is sent to the default upstream
under its own name, which covers the provider's built-in models. A model on a
user's API is only listed for that user.

'ModelCatalog' is the pluggable interface. 'StaticModelCatalog' keeps the
registrations in memory.
"""

from abc import ABC, abstractmethod

from loguru import logger
from pydantic import BaseModel, Field, HttpUrl, field_validator

from streaming_chat.config import DEFAULT_API_KEY, DEFAULT_API_URL


class ModelEndpoint(BaseModel):
    """Where and how to call one model."""

    endpoint_url: HttpUrl
    credential: str = Field(min_length=1)
    upstream_model_id: str = Field(min_length=1)


class UserAPI(BaseModel):
    """An OpenAI-compatible API registered by a user."""

    id: str
    owner_id: str
    api_url: HttpUrl
    api_key: str


class RegisteredModel(BaseModel):
    """A model name bound to a user API. 'display_name' is what the picker shows."""

    name: str
    display_name: str
    api_id: str | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return value.strip()


class ModelCatalog(ABC):
    @abstractmethod
    async def resolve(self, model_identifier: str) -> ModelEndpoint:
        pass

    @abstractmethod
    async def list_models(self, user_id: str) -> list[RegisteredModel]:
        """Return the models visible to 'user_id': shared ones and those on the user's own APIs."""
        pass


class StaticModelCatalog(ModelCatalog):
    def __init__(
        self,
        default_url: str = DEFAULT_API_URL,
        default_key: str = DEFAULT_API_KEY,
    ) -> None:
        self.default_url = default_url
        self.default_key = default_key
        self.apis: dict[str, UserAPI] = {}
        self.models: dict[str, RegisteredModel] = {}

    def register_api(self, api: UserAPI) -> UserAPI:
        self.apis[api.id] = api
        return api

    def register_model(self, model: RegisteredModel) -> RegisteredModel:
        if model.api_id is not None and model.api_id not in self.apis:
            raise ValueError(f"Unknown API {model.api_id!r} for model {model.name!r}")
        self.models[model.name] = model
        return model

    async def list_models(self, user_id: str) -> list[RegisteredModel]:
        return [
            model
            for model in self.models.values()
            if model.api_id is None or self.apis[model.api_id].owner_id == user_id
        ]

    async def resolve(self, model_identifier: str) -> ModelEndpoint:
        model = self.models.get(model_identifier)
        api = self.apis.get(model.api_id) if model and model.api_id else None
        if api is None:
            logger.debug(f"Model {model_identifier!r} resolved to the default upstream")
            return ModelEndpoint.model_validate(
                {
                    "endpoint_url": self.default_url,
                    "credential": self.default_key,
                    "upstream_model_id": model_identifier,
                }
            )
        return ModelEndpoint(
            endpoint_url=api.api_url,
            credential=api.api_key,
            upstream_model_id=model.name if model else model_identifier,
        )
