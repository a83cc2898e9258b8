"""Merge, rank and summarize provider quotes."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from quotehub.core.config_models import ProviderConfig
from quotehub.modules.quote.models import ProviderResult, Quote

_LOWEST_PRIORITY = 10**6


class ResponseAggregator:
    """Deterministic ordering of the merged quote list.

    Sort key is monthly premium, then provider priority, then provider id.
    The list returned by ``merge`` is the one persisted and the one shown to
    the caller.
    """

    @staticmethod
    def merge(
        results: Iterable[ProviderResult],
        configs: Mapping[str, ProviderConfig] | Iterable[ProviderConfig],
    ) -> list[Quote]:
        if not isinstance(configs, Mapping):
            configs = {c.id: c for c in configs}

        by_provider: dict[str, Quote] = {}
        for result in results:
            if not result.ok:
                continue
            quote = result.quote
            current = by_provider.get(result.provider_id)
            if current is None or quote.monthly_premium < current.monthly_premium:
                by_provider[result.provider_id] = quote

        def sort_key(item: tuple[str, Quote]) -> tuple[float, int, str]:
            provider_id, quote = item
            config = configs.get(provider_id)
            priority = config.priority if config is not None else _LOWEST_PRIORITY
            return (quote.monthly_premium, priority, provider_id)

        return [quote for _, quote in sorted(by_provider.items(), key=sort_key)]

    @staticmethod
    def summarize(quotes: list[Quote]) -> dict[str, Any]:
        """Comparison summary over an already ranked list."""
        if not quotes:
            return {"total_quotes": 0, "providers": 0}

        premiums = [q.monthly_premium for q in quotes]
        coverages = [q.coverage_amount for q in quotes]
        rated = [q for q in quotes if q.provider.rating is not None]
        # value = coverage bought per premium unit
        best_value = max(quotes, key=lambda q: (q.coverage_amount / q.monthly_premium, -q.monthly_premium))

        summary: dict[str, Any] = {
            "total_quotes": len(quotes),
            "providers": len({q.provider.id for q in quotes}),
            "price_range": {"min": round(min(premiums), 2), "max": round(max(premiums), 2)},
            "average_premium": round(sum(premiums) / len(premiums), 2),
            "coverage_range": {"min": round(min(coverages), 2), "max": round(max(coverages), 2)},
            "lowest_price": {"quote_id": quotes[0].quote_id, "provider_id": quotes[0].provider.id},
            "best_value": {"quote_id": best_value.quote_id, "provider_id": best_value.provider.id},
        }
        if rated:
            top = max(rated, key=lambda q: q.provider.rating)
            summary["highest_rated"] = {
                "quote_id": top.quote_id,
                "provider_id": top.provider.id,
                "rating": top.provider.rating,
            }
        return summary
