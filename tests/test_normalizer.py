"""Tests for link normalization."""

import pytest

from filelink_usage.normalizer import Normalizer, is_managed, normalize


class TestCanonicalForm:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("https://dev.example.com/sites/default/files/foo/bar.pdf?x=1#sec", "public://foo/bar.pdf"),
            ("http://example.com/system/files//doc.txt?y=2#frag", "private://doc.txt"),
            ("/sites/default/files/My%20File.pdf", "public://My File.pdf"),
            ("https://cdn.example.com/assets/manual.pdf?ver=1", "/assets/manual.pdf"),
        ],
    )
    def test_known_spellings(self, raw, expected):
        assert normalize(raw) == expected

    def test_protocol_relative_url(self):
        assert normalize("//cdn.example.com/sites/default/files/a.pdf") == "public://a.pdf"
        assert normalize("//localhost:8080/system/files/b.txt?x=1") == "private://b.txt"
        assert normalize("//cdn.example.com/assets/app.js") == "/assets/app.js"

    def test_double_leading_slash_without_host_is_a_path(self):
        assert normalize("//sites/default/files/a.pdf") == "public://a.pdf"

    def test_entities_and_quotes(self):
        assert normalize("&quot;/sites/default/files/report.pdf&quot;") == "public://report.pdf"
        assert normalize("  '/system/files/a.txt'  ") == "private://a.txt"

    def test_entity_encoded_query(self):
        assert normalize("/sites/default/files/a.pdf?x=1&amp;y=2") == "public://a.pdf"

    def test_canonical_scheme_is_cleaned(self):
        assert normalize("public:///report.pdf") == "public://report.pdf"
        assert normalize("PUBLIC://Report.PDF") == "public://Report.PDF"
        assert normalize("private://dir//file.txt?download=1") == "private://dir/file.txt"

    def test_prefix_is_case_insensitive_remainder_is_not(self):
        assert normalize("/SITES/Default/FILES/Mixed.PDF") == "public://Mixed.PDF"

    def test_index_suffix_stripped(self):
        assert normalize("/sites/default/files/docs/index.html") == "public://docs"
        assert normalize("/sites/default/files/docs/index") == "public://docs"

    def test_double_percent_encoding(self):
        assert normalize("/sites/default/files/a%2520b.pdf") == "public://a b.pdf"

    def test_outside_mounts_is_not_managed(self):
        link = normalize("/themes/custom/logo.svg")
        assert link == "/themes/custom/logo.svg"
        assert not is_managed(link)

    def test_total_on_bad_input(self):
        assert normalize("") == ""
        assert normalize(None) == ""
        assert normalize(42) == ""
        assert normalize("   ") == ""


class TestIdempotence:
    @pytest.mark.parametrize(
        "raw",
        [
            "https://example.com/sites/default/files/a%2520b.pdf?x#y",
            "&amp;quot;/sites/default/files/x.pdf&amp;quot;",
            "public:////deep//path/index.html",
            "/system/files/%2523hash.txt",
            "HTTP://Example.COM//sites//default//files//weird/index",
            "'\"/sites/default/files/q.pdf\"'",
            "not a link at all",
            "//cdn.example.com///sites/default/files/c.pdf",
        ],
    )
    def test_normalize_twice_is_normalize_once(self, raw):
        once = normalize(raw)
        assert normalize(once) == once

    def test_equivalent_spellings_agree(self):
        spellings = [
            "https://www.example.com/sites/default/files/reports/2024.pdf",
            "//www.example.com/sites/default/files/reports/2024.pdf",
            "/sites/default/files/reports/2024.pdf",
            "/sites/default/files//reports//2024.pdf",
            "/sites/default/files/reports/%32%30%32%34.pdf",
            "public://reports/2024.pdf",
        ]
        assert {normalize(s) for s in spellings} == {"public://reports/2024.pdf"}


class TestCustomPrefixes:
    def test_configured_mounts(self):
        n = Normalizer(public_prefix="/files/pub/", private_prefix="/files/priv/")
        assert n.normalize("/files/pub/report.pdf") == "public://report.pdf"
        assert n.normalize("https://x.test/files/priv/a.txt") == "private://a.txt"
        assert n.normalize("/sites/default/files/report.pdf") == "/sites/default/files/report.pdf"

    def test_to_url_path(self):
        n = Normalizer()
        assert n.to_url_path("public://a/b.pdf") == "/sites/default/files/a/b.pdf"
        assert n.to_url_path("private://c.txt") == "/system/files/c.txt"
        assert n.to_url_path("/other") == "/other"
