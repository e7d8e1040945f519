import asyncio
import unittest

from llepub.diagnostics import DiagnosticKind, DiagnosticLog
from llepub.errors import ConflictError, FetchError, ResourceFetchError
from llepub.fetch import FetchResponse
from llepub.markup import LxmlNormalizer
from llepub.styles import StylesheetRegistry, css_problem


class FakeFetcher:
    def __init__(self, responses=None) -> None:
        self.responses = responses or {}
        self.calls: list[str] = []

    async def __call__(self, url: str) -> FetchResponse:
        self.calls.append(url)
        response = self.responses.get(url)
        if response is None:
            raise FetchError(url, "connection refused")
        return response


def _registry(fetcher=None) -> tuple[StylesheetRegistry, DiagnosticLog]:
    diagnostics = DiagnosticLog()
    return StylesheetRegistry(fetcher or FakeFetcher(), LxmlNormalizer(), diagnostics), diagnostics


class AddStylesheetTests(unittest.TestCase):
    def test_same_hint_is_accepted_and_updates_content(self) -> None:
        registry, _ = _registry()
        registry.add_stylesheet(1, "p { margin: 0; }", "css/base.css")
        entry = registry.add_stylesheet(1, "p { margin: 1em; }", "css/base.css")
        self.assertEqual(entry.content, "p { margin: 1em; }")
        self.assertEqual(len(registry.sorted_stylesheets()), 1)

    def test_different_hint_conflicts(self) -> None:
        registry, _ = _registry()
        registry.add_stylesheet(1, "p {}", "css/base.css")
        with self.assertRaises(ConflictError) as ctx:
            registry.add_stylesheet(1, "p {}", "css/other.css")
        self.assertEqual(ctx.exception.index, 1)

    def test_missing_hint_keeps_existing_hint(self) -> None:
        registry, _ = _registry()
        registry.add_stylesheet(2, "a {}", "css/links.css")
        entry = registry.add_stylesheet(2, "a { color: red; }")
        self.assertEqual(entry.path_hint, "css/links.css")

    def test_index_taken_by_renamed_map_entry_conflicts(self) -> None:
        registry, _ = _registry()
        registry.add_stylesheet(1, "p {}")
        asyncio.run(registry.import_map({"Styles/style1.css": "h1 {}"}))

        with self.assertRaises(ConflictError) as ctx:
            registry.add_stylesheet(1000, "em {}")

        self.assertEqual(ctx.exception.index, 1000)
        self.assertEqual(ctx.exception.existing_hint, "Styles/style1.css")
        self.assertFalse(registry.has_index(1000))
        self.assertEqual(registry.mapped_stylesheets(), [("style1000.css", "h1 {}")])

        registry.add_stylesheet(1001, "em {}")
        self.assertTrue(registry.has_index(1001))

    def test_stylesheets_sorted_by_index(self) -> None:
        registry, _ = _registry()
        for index in (5, 0, 2):
            registry.add_stylesheet(index, f"/* {index} */")
        self.assertEqual([entry.index for entry in registry.sorted_stylesheets()], [0, 2, 5])

    def test_invalid_css_is_kept_with_diagnostic(self) -> None:
        registry, diagnostics = _registry()
        with self.assertLogs("llepub.diagnostics", level="WARNING"):
            registry.add_stylesheet(3, "p { color: red;")
        self.assertTrue(registry.has_index(3))
        self.assertEqual(len(diagnostics.of_kind(DiagnosticKind.INVALID_STYLESHEET)), 1)

    def test_css_problem(self) -> None:
        self.assertIsNone(css_problem("a { content: '}'; } /* { */"))
        self.assertEqual(css_problem("a { color: red;"), "unbalanced braces")
        self.assertEqual(css_problem("a {} }"), "unbalanced braces")
        self.assertEqual(css_problem("/* open"), "unterminated comment")
        self.assertEqual(css_problem("a { content: 'x; }"), "unterminated string")


class ImportMapTests(unittest.TestCase):
    def test_indexed_name_is_renamed_and_links_rewritten(self) -> None:
        registry, diagnostics = _registry()
        registry.add_stylesheet(1, "body { color: black; }")

        imported = asyncio.run(
            registry.import_map(
                {
                    "Styles/style1.css": "h1 { font-size: 2em; }",
                    "Styles/fonts/serif.css": "body { font-family: serif; }",
                }
            )
        )

        self.assertEqual(imported["Styles/style1.css"], "../Styles/style1000.css")
        self.assertEqual(imported["Styles/fonts/serif.css"], "../Styles/fonts/serif.css")
        self.assertEqual(
            registry.mapped_stylesheets(),
            [("style1000.css", "h1 { font-size: 2em; }"), ("fonts/serif.css", "body { font-family: serif; }")],
        )
        self.assertEqual(len(diagnostics.of_kind(DiagnosticKind.STYLESHEET_RENAMED)), 1)

        markup = (
            "<html><head>"
            '<link rel="stylesheet" type="text/css" href="Styles/style1.css"/>'
            '<link rel="stylesheet" href="Styles/fonts/serif.css"/>'
            "</head><body><p>Text</p></body></html>"
        )
        rewritten = registry.rewrite_references(markup)
        self.assertIn('href="../Styles/style1000.css"', rewritten)
        self.assertIn('href="../Styles/fonts/serif.css"', rewritten)
        self.assertNotIn('href="Styles/style1.css"', rewritten)

    def test_rename_skips_taken_numbers(self) -> None:
        registry, _ = _registry()
        registry.add_stylesheet(1000, "p {}")
        asyncio.run(registry.import_map([("style3.css", "a {}"), ("Styles/style4.css", "b {}")]))
        names = [path for path, _ in registry.mapped_stylesheets()]
        self.assertEqual(names, ["style1001.css", "style1002.css"])

    def test_remote_source_is_fetched(self) -> None:
        fetcher = FakeFetcher(
            {
                "https://cdn.example.com/theme.css": FetchResponse(
                    url="https://cdn.example.com/theme.css",
                    status=200,
                    headers={"content-type": "text/css; charset=utf-8"},
                    body="p::before { content: '§'; }".encode("utf-8"),
                )
            }
        )
        registry, _ = _registry(fetcher)
        asyncio.run(registry.import_map({"theme.css": "https://cdn.example.com/theme.css"}))
        self.assertEqual(registry.mapped_stylesheets(), [("theme.css", "p::before { content: '§'; }")])
        self.assertEqual(fetcher.calls, ["https://cdn.example.com/theme.css"])

    def test_remote_failure_is_fatal(self) -> None:
        fetcher = FakeFetcher(
            {"https://cdn.example.com/gone.css": FetchResponse(url="https://cdn.example.com/gone.css", status=404)}
        )
        registry, _ = _registry(fetcher)
        with self.assertRaises(ResourceFetchError) as ctx:
            asyncio.run(registry.import_map({"gone.css": "https://cdn.example.com/gone.css"}))
        self.assertEqual(ctx.exception.status, 404)

        with self.assertRaises(ResourceFetchError):
            asyncio.run(registry.import_map({"down.css": "https://down.example.com/x.css"}))

    def test_paths_cannot_escape_styles_directory(self) -> None:
        registry, _ = _registry()
        asyncio.run(registry.import_map({"../../etc/evil.css": "a {}"}))
        self.assertEqual(registry.mapped_stylesheets(), [("etc/evil.css", "a {}")])


class RewriteReferencesTests(unittest.TestCase):
    def test_path_hint_links_point_at_indexed_file(self) -> None:
        registry, _ = _registry()
        registry.add_stylesheet(2, "p {}", "css/chapter.css")
        markup = (
            '<html><head><link rel="stylesheet" href="css/chapter.css"/></head>'
            "<body><p>a</p></body></html>"
        )
        self.assertIn('href="../Styles/style2.css"', registry.rewrite_references(markup))

    def test_dangling_link_is_removed_with_diagnostic(self) -> None:
        registry, diagnostics = _registry()
        markup = (
            "<html><head><title>t</title>"
            '<link rel="stylesheet" href="nowhere.css"/>'
            '<link rel="icon" href="favicon.ico"/>'
            "</head><body><p>a</p></body></html>"
        )
        with self.assertLogs("llepub.diagnostics", level="WARNING"):
            rewritten = registry.rewrite_references(markup)
        self.assertNotIn("nowhere.css", rewritten)
        self.assertIn("favicon.ico", rewritten)
        dangling = diagnostics.of_kind(DiagnosticKind.DANGLING_REFERENCE)
        self.assertEqual([item.subject for item in dangling], ["nowhere.css"])

    def test_fragment_stays_fragment(self) -> None:
        registry, _ = _registry()
        rewritten = registry.rewrite_references("Intro <p>One</p><p>Two</p>")
        self.assertEqual(rewritten, "Intro <p>One</p><p>Two</p>")


if __name__ == "__main__":
    unittest.main()
