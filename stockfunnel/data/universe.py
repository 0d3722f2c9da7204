"""
Bundled S&P 500 universe grouped by GICS sector.

Tickers use Yahoo Finance formatting (BRK-B, BF-B). Constituents change
quarterly; refresh this list when the index is rebalanced.
"""

from __future__ import annotations

from functools import lru_cache


SP500_STOCKS: dict[str, list[str]] = {
    "Information Technology": [
        # Mega-cap tech
        "AAPL", "MSFT", "NVDA", "AVGO", "ORCL", "CRM", "ADBE", "AMD", "CSCO", "ACN",
        "IBM", "INTC", "INTU", "TXN", "QCOM", "NOW", "AMAT", "ADI", "LRCX", "MU",
        "KLAC", "SNPS", "CDNS", "PANW", "MCHP", "MSI", "APH", "ADSK", "FTNT", "NXPI",
        "MPWR", "ON", "FSLR", "KEYS", "CDW", "TYL", "ANSS", "HPQ", "HPE", "NTAP",
        "WDC", "STX", "AKAM", "SWKS", "QRVO", "TER", "ZBRA", "PTC", "EPAM",
        "IT", "CTSH", "VRSN", "FFIV", "GLW", "GEN", "TRMB", "ENPH", "SEDG", "ANET",
        "CRWD", "DDOG", "ZS", "TEAM", "SNOW", "PLTR", "NET", "MDB", "OKTA", "HUBS",
    ],

    "Health Care": [
        # Pharma & Biotech
        "LLY", "UNH", "JNJ", "MRK", "ABBV", "TMO", "ABT", "PFE", "DHR", "BMY",
        "AMGN", "GILD", "VRTX", "REGN", "MDT", "ISRG", "SYK", "BSX", "ELV", "CI",
        "CVS", "MCK", "ZTS", "BDX", "HCA", "MRNA", "BIIB", "ILMN", "IDXX", "A",
        "DXCM", "MTD", "IQV", "EW", "RMD", "ZBH", "GEHC", "CAH", "HOLX", "BAX",
        "COO", "ALGN", "TECH", "WAT", "STE", "VTRS", "CRL", "RVTY", "HSIC", "XRAY",
        "DGX", "LH", "TFX", "PODD", "INCY", "MOH", "HUM", "CNC", "UHS", "DVA",
        "OGN", "SOLV", "JAZZ", "BIO",
    ],

    "Financials": [
        # Banks
        "JPM", "BAC", "WFC", "GS", "MS", "C", "USB", "PNC", "TFC", "SCHW",
        "COF", "BK", "STT", "FITB", "HBAN", "RF", "CFG", "KEY", "NTRS", "MTB",
        "ZION", "CMA",
        # Insurance
        "BRK-B", "V", "MA", "AXP", "SPGI", "BLK", "MMC", "CB", "AON", "PGR",
        "CME", "ICE", "MCO", "MET", "AIG", "PRU", "MSCI", "AFL", "TRV", "ALL",
        "AJG", "NDAQ", "WTW", "HIG", "CINF", "L", "EG", "RJF", "BRO", "TROW",
        "FDS", "GL", "AIZ", "LNC", "IVZ", "BEN",
        # Financial Services
        "PYPL", "FIS", "FISV", "AMP", "SYF", "CBOE",
    ],

    "Consumer Discretionary": [
        # Retail
        "AMZN", "TSLA", "HD", "MCD", "NKE", "LOW", "SBUX", "TJX", "BKNG", "CMG",
        "MAR", "ORLY", "AZO", "ROST", "DHI", "YUM", "HLT", "LEN", "EBAY", "GM",
        "F", "BBY", "ULTA", "DRI", "PHM", "NVR", "GRMN", "APTV", "LKQ", "GPC",
        "POOL", "CCL", "RCL", "WYNN", "CZR", "MGM", "LVS", "HAS", "DPZ", "DECK",
        "TPR", "BWA", "MHK", "EXPE", "NCLH", "WHR", "RL", "PVH", "VFC", "GNRC",
        "PENN", "AAP", "BBWI", "KMX", "ETSY",
    ],

    "Communication Services": [
        "GOOGL", "GOOG", "META", "NFLX", "DIS", "CMCSA", "VZ", "T", "TMUS", "CHTR",
        "EA", "WBD", "TTWO", "OMC", "IPG", "MTCH", "LYV", "FOXA",
        "FOX", "NWS", "NWSA", "LUMN",
    ],

    "Industrials": [
        # Aerospace & Defense
        "RTX", "HON", "UPS", "BA", "CAT", "DE", "LMT", "GE", "UNP", "ADP",
        "NOC", "ETN", "ITW", "WM", "GD", "CSX", "NSC", "EMR", "FDX", "PH",
        "TT", "CTAS", "JCI", "PCAR", "CARR", "CMI", "AME", "OTIS", "RSG", "FAST",
        "VRSK", "GWW", "ROK", "CPRT", "IR", "LHX", "DOV", "HWM", "ODFL", "PWR",
        "XYL", "TDG", "PAYX", "EFX", "WAB", "FTV", "URI", "EXPD", "J", "SNA",
        "AXON", "IEX", "BR", "TXT", "LDOS", "JBHT", "CHRW", "DAL", "UAL", "LUV",
        "AAL", "ALK", "ROL", "NDSN", "RHI", "PNR", "MAS", "AOS", "ALLE",
        "HII", "GNRC", "PAYC", "CSGP",
    ],

    "Consumer Staples": [
        "PG", "KO", "PEP", "COST", "WMT", "PM", "MO", "MDLZ", "CL", "TGT",
        "ADM", "STZ", "SYY", "GIS", "KMB", "HSY", "KHC", "KDP", "KR", "WBA",
        "EL", "MNST", "MKC", "CHD", "CLX", "K", "CAG", "SJM", "HRL", "TSN",
        "BF-B", "TAP", "CPB", "LW", "BG", "COTY",
    ],

    "Energy": [
        "XOM", "CVX", "COP", "SLB", "EOG", "MPC", "PSX", "VLO", "OXY",
        "WMB", "HAL", "DVN", "KMI", "BKR", "FANG", "CTRA", "OKE", "TRGP",
        "APA", "EQT",
    ],

    "Utilities": [
        "NEE", "SO", "DUK", "SRE", "AEP", "D", "EXC", "XEL", "ED", "PCG",
        "WEC", "PEG", "AWK", "ES", "DTE", "EIX", "ETR", "FE", "AEE", "PPL",
        "CMS", "CNP", "EVRG", "ATO", "NI", "LNT", "NRG", "PNW",
    ],

    "Real Estate": [
        "PLD", "AMT", "EQIX", "CCI", "PSA", "O", "WELL", "DLR", "SPG", "VICI",
        "AVB", "EQR", "SBAC", "WY", "ARE", "VTR", "MAA", "EXR", "IRM", "ESS",
        "INVH", "UDR", "KIM", "REG", "CPT", "HST", "BXP", "DOC", "FRT", "AIV",
    ],

    "Materials": [
        "LIN", "APD", "SHW", "ECL", "FCX", "NEM", "NUE", "DOW", "DD", "PPG",
        "CTVA", "VMC", "MLM", "ALB", "IFF", "CF", "MOS", "LYB", "CE", "FMC",
        "PKG", "IP", "EMN", "AVY", "SEE", "BALL", "AMCR",
    ],
}


@lru_cache
def all_tickers() -> tuple[str, ...]:
    """Every ticker in the universe, deduplicated, in sector order."""
    return tuple(dict.fromkeys(t for tickers in SP500_STOCKS.values() for t in tickers))


def sectors() -> list[str]:
    return list(SP500_STOCKS)


def tickers_for_sector(sector: str) -> list[str]:
    return list(SP500_STOCKS.get(sector, []))


@lru_cache
def _sector_index() -> dict[str, str]:
    index: dict[str, str] = {}
    for sector, tickers in SP500_STOCKS.items():
        for ticker in tickers:
            index.setdefault(ticker, sector)
    return index


def sector_for(ticker: str) -> str | None:
    """GICS sector of a ticker, or None when it is not in the universe."""
    return _sector_index().get(ticker.upper().strip())
