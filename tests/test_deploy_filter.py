from loupe.deploy_filter import could_affect_page, extract_route


def test_extract_route_strips_trailing_slash() -> None:
    assert extract_route("https://example.com/pricing/") == "/pricing"
    assert extract_route("https://example.com") == "/"


def test_no_file_list_is_conservative() -> None:
    assert could_affect_page([], "https://example.com/pricing")
    assert could_affect_page(None, "https://example.com/pricing")


def test_backend_only_push_does_not_affect_pages() -> None:
    files = ["src/app/api/webhook/route.ts", "src/lib/db.ts", "README.md", "supabase/migrations/001.sql"]
    assert not could_affect_page(files, "https://example.com/pricing")


def test_global_layout_and_styles_affect_every_page() -> None:
    assert could_affect_page(["src/app/layout.tsx"], "https://example.com/pricing")
    assert could_affect_page(["tailwind.config.ts"], "https://example.com/")
    assert could_affect_page(["public/logo.svg"], "https://example.com/about")


def test_route_files_only_affect_their_route() -> None:
    assert could_affect_page(["src/app/pricing/page.tsx"], "https://example.com/pricing")
    assert could_affect_page(["src/app/pricing/page.tsx"], "https://example.com/pricing/enterprise")
    assert not could_affect_page(["src/app/pricing/page.tsx"], "https://example.com/about")


def test_root_page_file_only_affects_home() -> None:
    assert could_affect_page(["src/app/page.tsx"], "https://example.com/")
    assert not could_affect_page(["src/app/page.tsx"], "https://example.com/pricing")


def test_route_groups_are_transparent() -> None:
    assert could_affect_page(["src/app/(marketing)/pricing/page.tsx"], "https://example.com/pricing")
    assert not could_affect_page(["src/app/(marketing)/pricing/page.tsx"], "https://example.com/blog")


def test_unmapped_shared_component_affects_any_page() -> None:
    assert could_affect_page(["src/components/Button.tsx"], "https://example.com/about")


def test_mapped_component_directory_is_scoped() -> None:
    routes = {"src/components/pricing/": ["/pricing"]}
    assert could_affect_page(["src/components/pricing/Table.tsx"], "https://example.com/pricing", component_routes=routes)
    assert not could_affect_page(["src/components/pricing/Table.tsx"], "https://example.com/about", component_routes=routes)


def test_unknown_file_is_conservative() -> None:
    assert could_affect_page(["content/homepage.json"], "https://example.com/about")
