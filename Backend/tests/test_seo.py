from app.models import Category, Destination
from app.seo import build_robots_txt, build_sitemap_xml, tenant_base_url


def test_base_url_prefers_tenant_domain():
    assert tenant_base_url({"domain": "luxortours.com"}) == "https://luxortours.com"
    assert tenant_base_url({}).startswith("http")


class TestRobotsTxt:
    def test_private_paths_and_sitemap(self):
        robots = build_robots_txt("https://luxortours.com")
        assert "Disallow: /admin\nDisallow: /admin/*" in robots
        assert "Disallow: /*?tenant=*" in robots
        assert robots.rstrip().endswith("Sitemap: https://luxortours.com/sitemap.xml")

    def test_ai_crawlers_are_blocked(self):
        robots = build_robots_txt("https://luxortours.com")
        for bot in ("GPTBot", "CCBot", "ClaudeBot"):
            assert f"User-agent: {bot}\nDisallow: /" in robots


class TestSitemap:
    async def test_static_pages_only_for_empty_tenant(self, async_session):
        xml = await build_sitemap_xml(async_session, "luxor", "https://luxortours.com")
        assert xml.startswith('<?xml version="1.0" encoding="UTF-8"?>')
        assert "<loc>https://luxortours.com</loc>" in xml
        assert "<loc>https://luxortours.com/about</loc>" in xml
        assert xml.count("<url>") == 9

    async def test_inherits_default_catalog(self, async_session, make_tour):
        await make_tour(slug="pyramids-day-trip")
        async_session.add(Destination(tenant_id="default", name="Giza", slug="giza"))
        async_session.add(Category(tenant_id="default", name="Day Trips", slug="day-trips"))
        await async_session.flush()

        xml = await build_sitemap_xml(async_session, "luxor", "https://luxortours.com")

        assert "<loc>https://luxortours.com/pyramids-day-trip</loc>" in xml
        assert "<loc>https://luxortours.com/destinations/giza</loc>" in xml
        assert "<loc>https://luxortours.com/categories/day-trips</loc>" in xml

    async def test_escapes_slugs(self, async_session, make_tour):
        await make_tour(slug="tea&coffee")
        xml = await build_sitemap_xml(async_session, "default", "https://example.com")
        assert "tea&amp;coffee" in xml
