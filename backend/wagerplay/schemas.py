"""One strict request model per client action. Unknown fields are rejected."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from wagerplay.errors import RequestInvalid
from wagerplay.ledger import is_valid_address


class ActionRequest(BaseModel):
    model_config = ConfigDict(extra='forbid', alias_generator=to_camel, frozen=True)


def _check_address(value):
    if not is_valid_address(value):
        raise ValueError('Invalid pubkey')
    return value


class CreateMatchRequest(ActionRequest):
    creator_pubkey: StrictStr
    bet_lamports: StrictInt = Field(gt=0)
    payment_sig: Optional[StrictStr] = Field(default=None, min_length=1)

    @field_validator('creator_pubkey')
    @classmethod
    def check_creator_pubkey(cls, value):
        return _check_address(value)


class JoinMatchRequest(ActionRequest):
    joiner_pubkey: StrictStr
    payment_sig: StrictStr = Field(min_length=1)

    @field_validator('joiner_pubkey')
    @classmethod
    def check_joiner_pubkey(cls, value):
        return _check_address(value)


class SessionRequest(ActionRequest):
    session_token: StrictStr = Field(min_length=1)


class MoveRequest(SessionRequest):
    index: StrictInt = Field(ge=0, le=8)


class ClaimTimeoutRequest(SessionRequest):
    pass


class CancelMatchRequest(SessionRequest):
    pass


def parse_request(schema, data):
    if not isinstance(data, dict):
        raise RequestInvalid('Bad input')
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = '.'.join(str(part) for part in first['loc']) or 'body'
        raise RequestInvalid(f"Bad input: {field}: {first['msg']}")
