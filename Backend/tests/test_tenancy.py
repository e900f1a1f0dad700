"""
Tenant resolution order, host mapping, scoped query clauses and the
default-catalog / default-config fallbacks.
"""
import pytest
from sqlalchemy import select
from starlette.requests import Request

from app.core.config import get_settings
from app.models import Category, Tour
from app.tenancy import (
    DEFAULT_TENANT_ID,
    TenantContext,
    TenantResolutionSource,
    build_tenant_clause,
    clear_tenant_cache,
    default_tenant_config,
    generate_css_variables,
    generate_preview_url,
    get_tenant_config,
    list_categories,
    list_public_tours,
    normalize_domain,
    resolve_tenant_context,
    tenant_id_from_host,
)
from app.tenancy import context as tenancy_context


def make_request(query: str = "", headers: dict | None = None) -> Request:
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/tours/public",
        "query_string": query.encode(),
        "headers": raw_headers,
    }
    return Request(scope)


class TestResolveTenantContext:
    def test_query_param_beats_everything(self):
        request = make_request(
            "tenant=luxor",
            {"X-Tenant-Id": "cairo", "Cookie": "tenantId=aswan", "Host": "hurghada.example.com"},
        )
        ctx = resolve_tenant_context(request)
        assert ctx.tenant_id == "luxor"
        assert ctx.source == TenantResolutionSource.QUERY_PARAM

    def test_tenant_id_param_alias(self):
        assert resolve_tenant_context(make_request("tenantId=dahab")).tenant_id == "dahab"

    def test_header_then_cookie(self):
        request = make_request(headers={"X-Tenant-Id": "cairo", "Cookie": "tenantId=aswan"})
        assert resolve_tenant_context(request).source == TenantResolutionSource.HEADER

        request = make_request(headers={"Cookie": "tenantId=aswan", "Host": "hurghada.example.com"})
        ctx = resolve_tenant_context(request)
        assert ctx.tenant_id == "aswan"
        assert ctx.source == TenantResolutionSource.COOKIE

    def test_host_subdomain(self):
        ctx = resolve_tenant_context(make_request(headers={"Host": "www.hurghada.example.com"}))
        # "www." is stripped before the subdomain lookup
        assert ctx.tenant_id == "hurghada"
        assert ctx.source == TenantResolutionSource.DOMAIN

    def test_default_when_nothing_matches(self):
        ctx = resolve_tenant_context(make_request(headers={"Host": "localhost:8000"}))
        assert ctx.tenant_id == DEFAULT_TENANT_ID
        assert ctx.source == TenantResolutionSource.DEFAULT_FALLBACK

    def test_all_and_blank_are_ignored(self):
        ctx = resolve_tenant_context(make_request("tenant=all", {"X-Tenant-Id": "  "}))
        assert ctx.tenant_id == DEFAULT_TENANT_ID

    def test_context_rejects_all(self):
        with pytest.raises(ValueError):
            TenantContext("all")
        with pytest.raises(ValueError):
            TenantContext(" ")


class TestHostMapping:
    DOMAINS = {"cairotours.com": "cairo", "www.luxortours.com": "luxor"}

    def test_normalize_domain(self):
        assert normalize_domain("WWW.CairoTours.com:443") == "cairotours.com"

    def test_exact_and_normalized(self):
        assert tenant_id_from_host("cairotours.com", self.DOMAINS) == "cairo"
        assert tenant_id_from_host("www.cairotours.com:8080", self.DOMAINS) == "cairo"

    def test_www_variant(self):
        assert tenant_id_from_host("luxortours.com", self.DOMAINS) == "luxor"

    def test_known_subdomain(self):
        assert tenant_id_from_host("marsaalam.egypt-tours.net", self.DOMAINS) == "marsa-alam"

    def test_unknown(self):
        assert tenant_id_from_host("example.org", self.DOMAINS) is None
        assert tenant_id_from_host(None, self.DOMAINS) is None


class TestConfigHelpers:
    def test_starter_config(self):
        config = default_tenant_config("luxor", "Luxor Tours")
        assert config["domain"] == "luxortours.com"
        assert config["domains"] == ["luxortours.com", "www.luxortours.com"]
        assert config["email"]["fromEmail"] == "noreply@luxortours.com"
        assert config["isDefault"] is False

    def test_css_variables(self):
        css = generate_css_variables({"primaryColor": "#111111", "fontFamily": "Poppins"})
        assert "--primary-color: #111111;" in css
        assert "--font-family-heading: Poppins, system-ui, sans-serif;" in css

    def test_preview_url(self):
        assert generate_preview_url("luxor", "/tours", "https://admin.example.com/") == (
            "https://admin.example.com/tours?tenant=luxor"
        )


class TestBuildTenantClause:
    async def _tenant_ids(self, session, clause):
        result = await session.execute(select(Tour.tenant_id).where(clause).order_by(Tour.id))
        return list(result.scalars().all())

    async def test_modes(self, async_session, make_tour):
        for tenant_id in ["hurghada", "default", "shared", "cairo", None]:
            await make_tour(tenant_id=tenant_id)

        strict = build_tenant_clause(Tour, "hurghada", include_default=False)
        fallback = build_tenant_clause(Tour, "hurghada")
        shared = build_tenant_clause(Tour, "hurghada", include_shared=True)

        assert await self._tenant_ids(async_session, strict) == ["hurghada"]
        assert await self._tenant_ids(async_session, fallback) == ["hurghada", "default"]
        assert await self._tenant_ids(async_session, shared) == ["hurghada", "default", "shared", None]

    async def test_default_tenant_listed_once(self, async_session, make_tour):
        await make_tour(tenant_id="default")
        clause = build_tenant_clause(Tour, "default")
        assert await self._tenant_ids(async_session, clause) == ["default"]


class TestCatalogFallback:
    async def test_new_tenant_inherits_default_catalog(self, async_session, make_tour):
        inherited = await make_tour(tenant_id="default")
        tours = await list_public_tours(async_session, "luxor")
        assert [t.id for t in tours] == [inherited.id]

    async def test_tenant_with_own_tours_is_strict(self, async_session, make_tour):
        await make_tour(tenant_id="default")
        own = await make_tour(tenant_id="luxor")
        await make_tour(tenant_id="luxor", is_published=False)

        tours = await list_public_tours(async_session, "luxor")
        assert [t.id for t in tours] == [own.id]

    async def test_featured_first_and_category_filter(self, async_session, make_tour):
        plain = await make_tour(category_ids=[1])
        featured = await make_tour(is_featured=True, category_ids=[2])

        tours = await list_public_tours(async_session, "default")
        assert [t.id for t in tours] == [featured.id, plain.id]

        tours = await list_public_tours(async_session, "default", category_id=1)
        assert [t.id for t in tours] == [plain.id]

    async def test_categories_fall_back(self, async_session):
        async_session.add(Category(tenant_id="default", name="Desert Safari", slug="desert-safari"))
        await async_session.flush()
        categories = await list_categories(async_session, "cairo")
        assert [c.name for c in categories] == ["Desert Safari"]

    async def test_category_filter_runs_before_limit(self, async_session, make_tour):
        desert = [await make_tour(category_ids=[7]) for _ in range(3)]
        for _ in range(3):
            await make_tour(category_ids=[9])

        tours = await list_public_tours(async_session, "default", category_id=7, limit=2)

        assert [t.id for t in tours] == [desert[2].id, desert[1].id]


class TestGetTenantConfig:
    async def test_known_tenant(self, async_session, make_tenant):
        await make_tenant("hurghada")
        resolved = await get_tenant_config(async_session, "hurghada")
        assert resolved.config["tenantId"] == "hurghada"
        assert resolved.config["cssVariables"].startswith(":root {")
        assert not resolved.is_fallback

    async def test_unknown_tenant_gets_default_row(self, async_session, make_tenant):
        await make_tenant("default", name="Egypt Excursions")
        resolved = await get_tenant_config(async_session, "nowhere")
        assert resolved.config["tenantId"] == "default"
        assert resolved.is_default
        assert not resolved.is_fallback

    async def test_inactive_tenant_falls_back(self, async_session, make_tenant):
        await make_tenant("hurghada", is_active=False)
        resolved = await get_tenant_config(async_session, "hurghada")
        assert resolved.is_fallback
        assert resolved.config["name"] == "Egypt Excursions Online"

    async def test_payment_secrets_are_not_exposed(self, async_session, make_tenant):
        await make_tenant("hurghada", payments={"currency": "EUR", "stripeSecretKey": "sk_live_x"})
        config = (await get_tenant_config(async_session, "hurghada")).config
        assert config["payments"]["currency"] == "EUR"
        assert "stripeSecretKey" not in config["payments"]

    async def test_cache_holds_only_real_rows(self, async_session, make_tenant, monkeypatch):
        monkeypatch.setattr(get_settings(), "tenant_cache_ttl_seconds", 300)
        await make_tenant("default", name="Egypt Excursions")
        await make_tenant("hurghada")

        for i in range(50):
            await get_tenant_config(async_session, f"junk-{i}")
        await get_tenant_config(async_session, "hurghada")

        assert set(tenancy_context._tenant_cache) == {"default", "hurghada"}

    async def test_default_edit_reaches_unknown_ids(self, async_session, make_tenant, monkeypatch):
        monkeypatch.setattr(get_settings(), "tenant_cache_ttl_seconds", 300)
        default = await make_tenant("default", name="Egypt Excursions")
        await get_tenant_config(async_session, "nowhere")

        default.name = "Egypt Excursions Online Ltd"
        await async_session.flush()
        clear_tenant_cache("default")

        resolved = await get_tenant_config(async_session, "nowhere")
        assert resolved.config["name"] == "Egypt Excursions Online Ltd"

    async def test_expired_entries_are_swept(self, async_session, make_tenant, monkeypatch):
        monkeypatch.setattr(get_settings(), "tenant_cache_ttl_seconds", 300)
        hurghada = await get_tenant_config(async_session, "hurghada")
        tenancy_context._tenant_cache["cairo"] = (0.0, hurghada)

        await make_tenant("luxor")
        await get_tenant_config(async_session, "luxor")

        assert "cairo" not in tenancy_context._tenant_cache
        assert "luxor" in tenancy_context._tenant_cache
