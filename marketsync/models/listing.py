"""
Marketplace Listing Models

A Listing is the decoded, read-only snapshot of one on-chain record.
Metadata is the off-chain JSON document its URI points to, and a MarketItem
is the merged unit handed to consumers.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Positional shape returned by getListings():
# (tokenId, creator, owner, uri, price, isListed, createdAt)
RawListingTuple = tuple[Any, ...]


class Listing(BaseModel):
    """One marketplace record decoded from the contract."""

    model_config = ConfigDict(frozen=True)

    token_id: int = Field(description="Unique token ID")
    creator: str = Field(description="Address that minted the token")
    owner: str = Field(description="Current owner address")
    uri: str = Field(description="Content URI of the metadata document")
    price_wei: int = Field(ge=0, description="Price in the smallest unit")
    is_listed: bool = Field(description="Whether the token is listed for sale")
    created_at: int = Field(description="Mint timestamp (unix seconds)")


class Metadata(BaseModel):
    """
    Off-chain metadata for a listing.

    All fields are optional-safe: a document missing any of them still
    produces a Metadata instance with empty strings.
    """

    name: str = ""
    description: str = ""
    image: str = ""

    @field_validator("name", "description", "image", mode="before")
    @classmethod
    def coerce_to_string(cls, v: Any) -> str:
        if v is None:
            return ""
        return v if isinstance(v, str) else str(v)


class MarketItem(BaseModel):
    """A Listing merged with its metadata (or a metadata error marker)."""

    model_config = ConfigDict(frozen=True)

    token_id: int
    creator: str
    owner: str
    uri: str
    price_wei: int
    is_listed: bool
    created_at: int
    price_display: str = Field(description="Price in ether as a decimal string")
    metadata: Metadata | None = None
    metadata_error: str | None = Field(
        default=None, description="Error marker when metadata could not be resolved"
    )

    @property
    def has_metadata(self) -> bool:
        return self.metadata is not None and self.metadata_error is None
