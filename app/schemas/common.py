"""Common/shared schemas."""

from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel

from rewardquota.services.scope import TrackingScope

# Decimals leave the API as JSON numbers, not strings.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class CamelModel(BaseModel):
    """Base model that serializes snake_case fields as camelCase."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class ScopeFields(CamelModel):
    scope: str
    scheme_id: str | None
    payment_method_id: str | None


def scope_fields(scope: TrackingScope) -> dict[str, str | None]:
    """Flatten a tracking scope into the ``scope``/``schemeId``/``paymentMethodId`` trio."""
    return {
        "scope": scope.kind.value,
        "scheme_id": scope.scheme_id,
        "payment_method_id": scope.payment_method_id,
    }
