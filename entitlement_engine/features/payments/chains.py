"""Chains accepted for crypto payment and their block-explorer endpoints."""

from typing import Dict, Optional

from entitlement_engine.models.billing import ChainInfo


MAINNET_CHAIN_ID = 1

CHAINS: Dict[int, ChainInfo] = {
    1: ChainInfo(
        chain_id=1,
        name="Ethereum Mainnet",
        currency="ETH",
        explorer="https://etherscan.io",
        api_url="https://api.etherscan.io/api",
    ),
    8453: ChainInfo(
        chain_id=8453,
        name="Base",
        currency="ETH",
        explorer="https://basescan.org",
        api_url="https://api.basescan.org/api",
    ),
    137: ChainInfo(
        chain_id=137,
        name="Polygon",
        currency="MATIC",
        explorer="https://polygonscan.com",
        api_url="https://api.polygonscan.com/api",
    ),
}


def get_chain_info(chain_id: int) -> Optional[ChainInfo]:
    return CHAINS.get(chain_id)


def chain_name(chain_id: int) -> str:
    info = CHAINS.get(chain_id)
    return info.name if info else f"Chain {chain_id}"


def chain_currency(chain_id: int) -> str:
    info = CHAINS.get(chain_id)
    return info.currency if info else "ETH"


def explorer_api_url(chain_id: int) -> str:
    # Unknown chains are looked up on mainnet.
    info = CHAINS.get(chain_id) or CHAINS[MAINNET_CHAIN_ID]
    return info.api_url
