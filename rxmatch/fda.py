"""
Catalog step: RxCUI or drug name → candidate NDC packages from the openFDA NDC directory.

Three lookups (by RxCUI, by drug name, by NDC), each cached under its own key. The RxCUI
search falls back to the name search when it errors or finds nothing.

Each openFDA product record fans out into one CandidatePackage per packaging entry:
samples are skipped, quantity/unit come from the leading "<number> <WORD>" of the package
description, and the listing expiration date decides the active flag.
"""
import logging
import re
import time
from datetime import date, datetime
from typing import Any, Optional

import requests

from rxmatch.audit import AuditEventType, AuditRecorder
from rxmatch.cache import TieredCache
from rxmatch.errors import CatalogFailure
from rxmatch.schemas import AuditContext, CandidatePackage

logger = logging.getLogger(__name__)

FDA_NDC_URL = "https://api.fda.gov/drug/ndc.json"

PACKAGE_DESC_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]+)")
DEFAULT_QUANTITY = 1
DEFAULT_UNIT = "UNIT"


def parse_package_description(description: str) -> tuple[float, str]:
    """'90 TABLET in 1 BOTTLE' → (90, 'TABLET'); anything else → (1, 'UNIT')."""
    m = PACKAGE_DESC_RE.match(description or "")
    if not m:
        return DEFAULT_QUANTITY, DEFAULT_UNIT
    value = float(m.group(1))
    return (int(value) if value.is_integer() else value), m.group(2)


def parse_fda_date(value: Any) -> Optional[date]:
    """openFDA dates are YYYYMMDD; ISO dates are accepted too."""
    if not value:
        return None
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in ("%Y%m%d", "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    logger.debug("Unparseable expiration date %r", value)
    return None


def is_active(expiration: Optional[date], today: Optional[date] = None) -> bool:
    """No expiration → active; expiration strictly before today → inactive."""
    if expiration is None:
        return True
    today = today or date.today()
    return expiration >= today


def parse_product(product: dict[str, Any], today: Optional[date] = None) -> list[CandidatePackage]:
    """One openFDA product record → its non-sample packages."""
    ingredients = product.get("active_ingredients") or []
    strength = ", ".join(str(i.get("strength")) for i in ingredients if i.get("strength"))
    route = product.get("route") or []
    if isinstance(route, str):
        route = [route]
    listing_expiration = parse_fda_date(product.get("listing_expiration_date"))

    packages = []
    for pkg in product.get("packaging") or []:
        if pkg.get("sample") is True:
            continue
        description = pkg.get("description") or ""
        quantity, unit = parse_package_description(description)
        expiration = listing_expiration or parse_fda_date(pkg.get("marketing_end_date"))
        packages.append(CandidatePackage(
            ndc=pkg.get("package_ndc") or product.get("product_ndc") or "",
            product_ndc=product.get("product_ndc") or "",
            generic_name=product.get("generic_name") or "",
            labeler_name=product.get("labeler_name") or "",
            brand_name=product.get("brand_name") or None,
            dosage_form=product.get("dosage_form") or "",
            route=list(route),
            strength=strength,
            package_description=description,
            package_quantity=quantity,
            package_unit=unit,
            is_active=is_active(expiration, today),
            expiration_date=expiration,
        ))
    return packages


def _digits(ndc: str) -> str:
    return ndc.replace("-", "").strip()


class CatalogClient:
    def __init__(
        self,
        cache: TieredCache,
        audit: AuditRecorder,
        session: Optional[requests.Session] = None,
        base_url: str = FDA_NDC_URL,
        timeout: float = 10.0,
        ttl: int = 21600,
        limit: int = 100,
    ):
        self.cache = cache
        self.audit = audit
        self.session = session or requests.Session()
        self.base_url = base_url
        self.timeout = timeout
        self.ttl = ttl
        self.limit = limit

    def search_by_identifier(
        self,
        rxcui: str,
        fallback_name: str | None = None,
        context: AuditContext | None = None,
    ) -> list[CandidatePackage]:
        """Packages for an RxCUI; name search on error or empty result when a fallback name is given."""
        context = context or AuditContext()
        key = f"catalog:id:{rxcui}"
        cached = self._cached(key)
        if cached is not None:
            self._record("rxcui", rxcui, cached, 0.0, context, cached=True, rxcui=rxcui)
            return cached

        start = time.perf_counter()
        error: Optional[CatalogFailure] = None
        packages: list[CandidatePackage] = []
        try:
            packages = self._search(f'openfda.rxcui:"{rxcui}"')
        except CatalogFailure as e:
            error = e
            self._record_error("rxcui", rxcui, e, context)
        elapsed = (time.perf_counter() - start) * 1000

        if packages:
            self._store(key, packages)
            self._record("rxcui", rxcui, packages, elapsed, context, cached=False, rxcui=rxcui)
            return packages

        if fallback_name:
            logger.warning(
                "RxCUI %s search %s; falling back to name search for %r",
                rxcui, "failed" if error else "found nothing", fallback_name,
            )
            packages = self.search_by_name(fallback_name, context)
            self._record("rxcui", rxcui, packages, elapsed, context, cached=False, rxcui=rxcui, fallback_used=True)
            return packages

        if error is not None:
            raise error
        self._record("rxcui", rxcui, [], elapsed, context, cached=False, rxcui=rxcui)
        return []

    def search_by_name(self, drug_name: str, context: AuditContext | None = None) -> list[CandidatePackage]:
        context = context or AuditContext()
        name = drug_name.strip()
        key = f"catalog:name:{name.lower()}"
        cached = self._cached(key)
        if cached is not None:
            self._record("name", name, cached, 0.0, context, cached=True)
            return cached

        start = time.perf_counter()
        try:
            packages = self._search(f'generic_name:"{name}" OR brand_name:"{name}"')
        except CatalogFailure as e:
            self._record_error("name", name, e, context)
            raise
        elapsed = (time.perf_counter() - start) * 1000
        if packages:
            self._store(key, packages)
        self._record("name", name, packages, elapsed, context, cached=False)
        return packages

    def search_by_package(self, ndc: str, context: AuditContext | None = None) -> list[CandidatePackage]:
        """Direct lookup of an already-known package (or product) NDC."""
        context = context or AuditContext()
        ndc = ndc.strip()
        key = f"catalog:pkg:{ndc}"
        cached = self._cached(key)
        if cached is not None:
            self._record("ndc", ndc, cached, 0.0, context, cached=True)
            return cached

        start = time.perf_counter()
        try:
            packages = self._search(f'packaging.package_ndc:"{ndc}" OR product_ndc:"{ndc}"')
        except CatalogFailure as e:
            self._record_error("ndc", ndc, e, context)
            raise
        exact = [p for p in packages if _digits(p.ndc) == _digits(ndc)]
        if exact:
            packages = exact
        elapsed = (time.perf_counter() - start) * 1000
        if packages:
            self._store(key, packages)
        self._record("ndc", ndc, packages, elapsed, context, cached=False)
        return packages

    def get_package_details(self, ndc: str, context: AuditContext | None = None) -> Optional[CandidatePackage]:
        for pkg in self.search_by_package(ndc, context):
            if _digits(pkg.ndc) == _digits(ndc):
                return pkg
        return None

    def _search(self, query: str) -> list[CandidatePackage]:
        try:
            resp = self.session.get(
                self.base_url,
                params={"search": query, "limit": self.limit},
                timeout=self.timeout,
            )
            if resp.status_code == 404:
                # openFDA answers 404 when nothing matches
                return []
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise CatalogFailure(f"openFDA search {query!r}: {e}") from e
        if not isinstance(data, dict):
            raise CatalogFailure(f"openFDA search {query!r}: unexpected payload")

        packages: list[CandidatePackage] = []
        for product in data.get("results") or []:
            packages.extend(parse_product(product))
        return packages

    def _cached(self, key: str) -> Optional[list[CandidatePackage]]:
        cached = self.cache.get(key)
        if cached is None:
            return None
        return [CandidatePackage.model_validate(p) for p in cached]

    def _store(self, key: str, packages: list[CandidatePackage]) -> None:
        self.cache.set(key, [p.model_dump(mode="json") for p in packages], self.ttl)

    def _record(
        self,
        method: str,
        query: str,
        packages: list[CandidatePackage],
        elapsed_ms: float,
        context: AuditContext,
        cached: bool,
        rxcui: str | None = None,
        fallback_used: bool = False,
    ) -> None:
        self.audit.record(
            AuditEventType.FDA_NDC_SEARCH,
            {
                "method": method,
                "query": query,
                "rxcui": rxcui,
                "ndc_codes": [p.ndc for p in packages],
                "package_count": len(packages),
                "cached": cached,
                "fallback_used": fallback_used,
            },
            context.model_copy(update={"processing_time_ms": elapsed_ms}),
        )

    def _record_error(self, method: str, query: str, error: Exception, context: AuditContext) -> None:
        logger.warning("openFDA %s search for %r failed: %s", method, query, error)
        self.audit.record(
            AuditEventType.API_ERROR,
            {"api_name": "fda_ndc", "method": method, "query": query, "error": str(error)},
            context,
        )
