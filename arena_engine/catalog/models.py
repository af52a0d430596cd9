"""
Pydantic models for the instrument catalogue.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class SymbolType(str, Enum):
    """Instrument type as reported to the charting front-end."""

    FOREX = "forex"
    CRYPTO = "crypto"
    COMMODITY = "commodity"
    STOCK = "stock"


class SymbolInfo(BaseModel):
    """
    Resolved symbol metadata.

    Frozen: a subscription captures this once and it never changes underneath it.
    """

    model_config = ConfigDict(frozen=True)

    symbol: str = Field(..., description="Canonical ticker (e.g., EURUSD)", min_length=1)
    description: str = Field(..., description="Human-readable name")
    type: SymbolType = Field(..., description="Instrument type")
    exchange: str = Field(..., description="Exchange label shown in the chart")
    pricescale: int = Field(default=100, description="10^decimals for price display", ge=1)
    minmov: int = Field(default=1, description="Minimum price movement in pricescale units")
    session: str = Field(default="24x7", description="Trading session")
    timezone: str = Field(default="Etc/UTC", description="Session timezone")
    supported_resolutions: tuple[str, ...] = Field(
        default=(),
        description="Resolutions the datafeed serves for this symbol",
    )
    has_intraday: bool = True
    has_no_volume: bool = False
    base_price: float = Field(
        default=100.0,
        description="Seed price for the synthetic generator",
        gt=0,
    )
    contract_size: float = Field(
        default=1.0,
        description="Units per lot, used for margin",
        gt=0,
    )

    @property
    def ticker(self) -> str:
        return self.symbol

    def to_chart_payload(self) -> dict:
        """Shape expected by the charting library's resolveSymbol."""
        return {
            "name": self.symbol,
            "full_name": self.symbol,
            "ticker": self.symbol,
            "description": self.description,
            "type": self.type.value,
            "session": self.session,
            "timezone": self.timezone,
            "exchange": self.exchange,
            "listed_exchange": self.exchange,
            "minmov": self.minmov,
            "pricescale": self.pricescale,
            "has_intraday": self.has_intraday,
            "has_no_volume": self.has_no_volume,
            "supported_resolutions": list(self.supported_resolutions),
            "data_status": "streaming",
            "currency_code": "USD",
        }


class SymbolSearchResult(BaseModel):
    """One row of a symbol search."""

    symbol: str
    full_name: str
    description: str
    exchange: str
    type: SymbolType
