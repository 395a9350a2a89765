"""
Message pushed to in-store display clients when a reward has no contact channel
"""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RewardDisplayMessage(BaseModel):
    """Serialized camelCase on the ``rewards:display:<store_id>`` channel"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    claim_link: str
    reward_satoshis: int
    currency: str = "USD"
    # reward value in the purchase currency
    reward_amount: Decimal
    transaction_id: str
    order_id: str | None = None
    created_at: datetime
    display_duration_seconds: int = Field(default=60, gt=0)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
