"""
Standardization step: drug name (+ strength, form) → RxCUI via the RxNav REST API.

Approximate-term search gives ranked candidates; each is checked (best first) for a
directly prescribable term type. No match, or any registry error, returns None: the
pipeline carries on without a standardized id and the catalog falls back to name search.
"""
import logging
import time
from typing import Any, Optional

import requests

from rxmatch.audit import AuditEventType, AuditRecorder
from rxmatch.cache import TieredCache
from rxmatch.errors import StandardizationFailure
from rxmatch.schemas import AuditContext, StandardizedIdentifier

logger = logging.getLogger(__name__)

RXNORM_BASE = "https://rxnav.nlm.nih.gov/REST"

# Clinical/branded drugs and packs: the term types a prescriber can write directly.
PRESCRIBABLE_TTYS = frozenset({"SCD", "SBD", "GPCK", "BPCK"})


def search_term(drug_name: str, strength: str | None = None, form: str | None = None) -> str:
    return " ".join(p.strip() for p in (drug_name, strength, form) if p and p.strip())


def standardize_cache_key(drug_name: str, strength: str | None = None, form: str | None = None) -> str:
    parts = [drug_name.strip(), (strength or "").strip(), (form or "").strip()]
    return "standardize:" + ":".join(parts).lower()


class StandardizationClient:
    def __init__(
        self,
        cache: TieredCache,
        audit: AuditRecorder,
        session: Optional[requests.Session] = None,
        base_url: str = RXNORM_BASE,
        timeout: float = 5.0,
        ttl: int = 2592000,
        max_candidates: int = 10,
    ):
        self.cache = cache
        self.audit = audit
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.ttl = ttl
        self.max_candidates = max_candidates

    def standardize(
        self,
        drug_name: str,
        strength: str | None = None,
        form: str | None = None,
        context: AuditContext | None = None,
    ) -> Optional[StandardizedIdentifier]:
        """Best prescribable RxCUI for the drug, or None. Never raises on registry errors."""
        context = context or AuditContext()
        key = standardize_cache_key(drug_name, strength, form)
        cached = self.cache.get(key)
        if cached is not None:
            identifier = StandardizedIdentifier.model_validate(cached)
            self._record(drug_name, identifier, 0.0, context, cached=True)
            return identifier

        start = time.perf_counter()
        try:
            identifier = self._resolve(search_term(drug_name, strength, form))
        except StandardizationFailure as e:
            elapsed = (time.perf_counter() - start) * 1000
            logger.warning("RxNorm lookup for %r failed, continuing without RxCUI: %s", drug_name, e)
            self.audit.record(
                AuditEventType.API_ERROR,
                {"api_name": "rxnorm", "drug_name": drug_name, "error": str(e)},
                context.model_copy(update={"processing_time_ms": elapsed}),
            )
            return None
        elapsed = (time.perf_counter() - start) * 1000

        if identifier is not None:
            self.cache.set(key, identifier.model_dump(mode="json"), self.ttl)
        else:
            logger.info("No prescribable RxNorm match for %r", drug_name)
        self._record(drug_name, identifier, elapsed, context, cached=False)
        return identifier

    def _resolve(self, term: str) -> Optional[StandardizedIdentifier]:
        for candidate in self.find_candidates(term):
            props = self.get_properties(candidate["rxcui"])
            if props is None:
                continue
            if props.get("tty") in PRESCRIBABLE_TTYS:
                return StandardizedIdentifier(
                    rxcui=str(props.get("rxcui") or candidate["rxcui"]),
                    name=props.get("name") or candidate.get("name") or term,
                    tty=props.get("tty"),
                )
        return None

    def find_candidates(self, term: str) -> list[dict[str, Any]]:
        """Approximate-match candidates, best score first, one entry per RxCUI."""
        data = self._get("/approximateTerm.json", {"term": term, "maxEntries": self.max_candidates})
        raw = (data.get("approximateGroup") or {}).get("candidate") or []
        seen: set[str] = set()
        candidates = []
        for c in sorted(raw, key=lambda c: _score(c.get("score")), reverse=True):
            rxcui = c.get("rxcui")
            if not rxcui or rxcui in seen:
                continue
            seen.add(rxcui)
            candidates.append({"rxcui": str(rxcui), "name": c.get("name"), "score": _score(c.get("score"))})
        return candidates[: self.max_candidates]

    def get_properties(self, rxcui: str) -> Optional[dict[str, Any]]:
        data = self._get(f"/rxcui/{rxcui}/properties.json")
        return data.get("properties") or None

    def get_ndcs(self, rxcui: str) -> list[str]:
        data = self._get(f"/rxcui/{rxcui}/ndcs.json")
        return list(((data.get("ndcGroup") or {}).get("ndcList") or {}).get("ndc") or [])

    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            resp = self.session.get(self.base_url + path, params=params, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise StandardizationFailure(f"RxNav {path}: {e}") from e
        if not isinstance(data, dict):
            raise StandardizationFailure(f"RxNav {path}: unexpected payload")
        return data

    def _record(
        self,
        drug_name: str,
        identifier: Optional[StandardizedIdentifier],
        elapsed_ms: float,
        context: AuditContext,
        cached: bool,
    ) -> None:
        self.audit.record(
            AuditEventType.RXNORM_LOOKUP,
            {
                "drug_name": drug_name,
                "rxcui": identifier.rxcui if identifier else None,
                "tty": identifier.tty if identifier else None,
                "success": identifier is not None,
                "cached": cached,
            },
            context.model_copy(update={"processing_time_ms": elapsed_ms}),
        )


def _score(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
