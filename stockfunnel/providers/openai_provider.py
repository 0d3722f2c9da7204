"""
OpenAI-backed qualitative analysis provider.

Produces the five Tier 3 write-ups (DCF, comparable, sentiment, risk,
earnings) as free text. Prompts ask for the phrasings the signal extractor
understands ("Overall Risk Score: X/10", "X% upside", sentiment words).
"""

from __future__ import annotations

from typing import Any, Optional

from openai import AsyncOpenAI

from stockfunnel.core.config import settings
from stockfunnel.core.logging import get_logger
from stockfunnel.pipeline.schemas import AnalysisKind


logger = get_logger("providers.openai")


SECTOR_PEERS: dict[str, list[str]] = {
    "Technology": ["AAPL", "MSFT", "GOOGL", "META", "NVDA", "AVGO", "CRM"],
    "Financial Services": ["JPM", "BAC", "WFC", "GS", "MS", "C", "BLK"],
    "Healthcare": ["JNJ", "UNH", "PFE", "MRK", "ABBV", "LLY", "TMO"],
    "Consumer Cyclical": ["AMZN", "TSLA", "HD", "NKE", "MCD", "SBUX", "TJX"],
    "Consumer Defensive": ["PG", "KO", "PEP", "WMT", "COST", "PM", "CL"],
    "Communication Services": ["GOOGL", "META", "NFLX", "DIS", "CMCSA", "T", "VZ"],
    "Industrials": ["CAT", "DE", "UNP", "HON", "GE", "BA", "LMT"],
    "Energy": ["XOM", "CVX", "COP", "SLB", "EOG", "MPC"],
    "Utilities": ["NEE", "DUK", "SO", "D", "AEP", "EXC", "SRE"],
    "Real Estate": ["PLD", "AMT", "EQIX", "SPG", "O", "WELL", "PSA"],
    "Basic Materials": ["LIN", "APD", "SHW", "ECL", "NEM", "FCX", "DD"],
}
# GICS names used by the bundled universe
SECTOR_PEERS.update(
    {
        "Information Technology": SECTOR_PEERS["Technology"],
        "Financials": SECTOR_PEERS["Financial Services"],
        "Health Care": SECTOR_PEERS["Healthcare"],
        "Consumer Discretionary": SECTOR_PEERS["Consumer Cyclical"],
        "Consumer Staples": SECTOR_PEERS["Consumer Defensive"],
        "Materials": SECTOR_PEERS["Basic Materials"],
    }
)
DEFAULT_PEERS = ["AAPL", "MSFT", "GOOGL", "AMZN", "NVDA"]


def peers_for(ticker: str, sector: Optional[str], limit: int = 4) -> list[str]:
    """Comparable companies for a ticker, excluding the ticker itself."""
    peers = SECTOR_PEERS.get(sector or "", DEFAULT_PEERS)
    return [p for p in peers if p.upper() != ticker.upper()][:limit]


SYSTEM_PROMPT = (
    "You are a buy-side equity analyst. Be concise and quantitative. "
    "Always state the requested summary lines exactly in the format asked."
)

PROMPTS: dict[AnalysisKind, str] = {
    AnalysisKind.DCF: (
        "Run a discounted cash flow valuation for {ticker} ({company}, {sector}), "
        "current price {price}. Summarize assumptions, then end with the lines\n"
        "INTRINSIC VALUE PER SHARE: $X\n"
        "and 'X% upside' or 'X% downside' versus the current price."
    ),
    AnalysisKind.COMPARABLE: (
        "Value {ticker} ({company}) against peers {peers} on P/E, EV/EBITDA and P/S. "
        "Current price {price}. End with 'Implied value: $X' and the premium or "
        "discount to peers as 'X% upside' or 'X% downside'."
    ),
    AnalysisKind.SENTIMENT: (
        "Assess market sentiment for {ticker}: analyst ratings, news flow, insider "
        "activity. Classify overall sentiment as very bullish, bullish, neutral, "
        "bearish or very bearish and say so explicitly."
    ),
    AnalysisKind.RISK: (
        "Assess the key risks of {ticker} ({sector}): beta, drawdowns, leverage, "
        "short interest, concentration. End with 'Overall Risk Score: X/10' where 1 "
        "is lowest risk and 10 is highest."
    ),
    AnalysisKind.EARNINGS: (
        "Review the last four quarters of earnings for {ticker}: beats or misses "
        "with percentages, guidance changes (raised / lowered guidance), and "
        "revenue growth expressed as '+X% growth'."
    ),
}


class OpenAIAnalysisProvider:
    """QualitativeAnalysisProvider using chat completions."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ):
        self._client = client
        self.model = model or settings.openai_model
        self.max_tokens = max_tokens or settings.openai_max_tokens

    def _get_client(self) -> Optional[AsyncOpenAI]:
        if self._client is None:
            if not settings.openai_api_key:
                logger.warning("OpenAI API key not configured")
                return None
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.openai_timeout_seconds,
            )
        return self._client

    @staticmethod
    def build_prompt(ticker: str, kind: AnalysisKind, context: dict[str, Any]) -> str:
        price = context.get("current_price")
        return PROMPTS[kind].format(
            ticker=ticker,
            company=context.get("company_name") or ticker,
            sector=context.get("sector") or "unknown sector",
            price=f"${price:.2f}" if price else "N/A",
            peers=", ".join(peers_for(ticker, context.get("sector"))),
        )

    async def analyze(
        self,
        ticker: str,
        kind: AnalysisKind,
        context: dict[str, Any],
    ) -> Optional[str]:
        """
        Generate one analysis.

        Returns:
            Analysis text or None if failed
        """
        client = self._get_client()
        if not client:
            return None

        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": self.build_prompt(ticker, kind, context)},
                ],
                max_tokens=self.max_tokens,
                temperature=0.3,
            )
            text = response.choices[0].message.content
            logger.debug(f"Generated {kind.value} analysis for {ticker} using {self.model}")
            return text.strip() if text else None
        except Exception as e:
            logger.error(f"Failed {kind.value} analysis for {ticker}: {e}")
            return None
