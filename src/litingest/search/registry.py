"""Provider selection by configured name."""

from typing import Callable, Dict, List, Sequence

from ..config.settings import Settings
from ..core.errors import InvalidInputError
from .adapters.openalex import OpenAlexClient
from .adapters.pubmed import PubMedClient
from .base import SearchProvider

PROVIDERS: Dict[str, Callable[[Settings], SearchProvider]] = {
    "pubmed": PubMedClient,
    "openalex": OpenAlexClient,
}


def build_provider(name: str, settings: Settings) -> SearchProvider:
    try:
        factory = PROVIDERS[name.lower()]
    except KeyError:
        raise InvalidInputError(
            f"Unknown provider: {name}", details={"available": sorted(PROVIDERS)}
        ) from None
    return factory(settings)


def build_providers(names: Sequence[str], settings: Settings) -> List[SearchProvider]:
    """Instantiate one provider per configured name, in order, ignoring repeats."""
    seen = set()
    providers: List[SearchProvider] = []
    for name in names:
        key = name.lower()
        if key in seen:
            continue
        seen.add(key)
        providers.append(build_provider(key, settings))
    return providers
