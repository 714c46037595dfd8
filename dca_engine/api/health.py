from fastapi import APIRouter
from typing import Dict, Any

from ..config import settings
from ..providers.bundler import get_bundler_provider
from ..providers.coingecko import get_coingecko_provider
from ..providers.fear_greed import get_fear_greed_provider
from ..providers.paymaster import get_paymaster_provider
from ..providers.rpc import get_chain_rpc_provider
from ..providers.signer import get_signer_provider
from ..providers.uniswap import get_uniswap_provider

router = APIRouter()


@router.get("/healthz")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint that verifies collaborator status"""

    providers = {
        "fear_greed": get_fear_greed_provider(),
        "coingecko": get_coingecko_provider(),
        "rpc": get_chain_rpc_provider(),
        "uniswap": get_uniswap_provider(),
        "signer": get_signer_provider(),
    }
    if settings.is_sponsored:
        providers["bundler"] = get_bundler_provider()
        providers["paymaster"] = get_paymaster_provider()

    provider_status = {}
    for name, provider in providers.items():
        provider_status[name] = await provider.health_check()

    # Disabled collaborators are not failures; errors and degraded ones are
    all_healthy = all(
        status["status"] not in ("error", "degraded")
        for status in provider_status.values()
    )

    available_providers = sum(
        1 for status in provider_status.values()
        if status["status"] in ("healthy", "configured")
    )

    return {
        "status": "healthy" if all_healthy and available_providers > 0 else "degraded",
        "providers": provider_status,
        "available_providers": available_providers,
        "total_providers": len(provider_status),
        "submission_mode": settings.submission_mode,
        "ledger": "convex" if settings.has_convex else "memory",
    }
