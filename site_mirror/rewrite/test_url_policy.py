import pytest

from site_mirror.rewrite import MirrorConfig, RewriteContext
from site_mirror.rewrite.url_policy import (
    UrlClass,
    classify_url,
    rewrite_url,
    rewrite_url_list,
)


class TestClassifyUrl:
    @pytest.mark.parametrize(
        "candidate,expected",
        [
            ("https://upstream.example/x", UrlClass.ABSOLUTE),
            ("HTTP://upstream.example/x", UrlClass.ABSOLUTE),
            ("//cdn.example/a.js", UrlClass.PROTOCOL_RELATIVE),
            ("/static/app.css", UrlClass.ROOT_RELATIVE),
            ("data:image/png;base64,AAAA", UrlClass.OPAQUE),
            ("blob:https://upstream.example/123", UrlClass.OPAQUE),
            ("JavaScript:void(0)", UrlClass.OPAQUE),
            ("#top", UrlClass.OPAQUE),
            ("images/a.png", UrlClass.RELATIVE),
            ("mailto:someone@example.com", UrlClass.RELATIVE),
            ("  /padded ", UrlClass.ROOT_RELATIVE),
        ],
    )
    def test_classification(self, candidate, expected):
        assert classify_url(candidate) is expected


class TestSameSiteAbsolute:
    def test_strips_origin_path_and_uses_request_origin(
        self, mirror_config, rewrite_context
    ):
        result = rewrite_url(
            "https://upstream.example/zrf/docs/page?x=1#sec", rewrite_context, mirror_config
        )
        assert result == "https://mirror.test/a/docs/page?x=1#sec"

    def test_path_outside_origin_path_kept(self, mirror_config, rewrite_context):
        result = rewrite_url(
            "https://upstream.example/other/page", rewrite_context, mirror_config
        )
        assert result == "https://mirror.test/a/other/page"

    def test_request_origin_comes_from_context(self, mirror_config):
        ctx = RewriteContext(request_origin="http://localhost:8000")
        result = rewrite_url("https://upstream.example/zrf/x", ctx, mirror_config)
        assert result == "http://localhost:8000/a/x"

    def test_host_comparison_ignores_case_and_default_port(
        self, mirror_config, rewrite_context
    ):
        result = rewrite_url(
            "https://UPSTREAM.example:443/zrf/x", rewrite_context, mirror_config
        )
        assert result == "https://mirror.test/a/x"

    def test_non_default_port_is_a_different_host(self, mirror_config, rewrite_context):
        url = "https://upstream.example:8443/zrf/x"
        assert rewrite_url(url, rewrite_context, mirror_config) == url

    def test_empty_path_becomes_root(self, mirror_config, rewrite_context):
        result = rewrite_url("https://upstream.example", rewrite_context, mirror_config)
        assert result == "https://mirror.test/a/"

    def test_protocol_relative_same_site(self, mirror_config, rewrite_context):
        result = rewrite_url("//upstream.example/zrf/x.js", rewrite_context, mirror_config)
        assert result == "https://mirror.test/a/x.js"

    @pytest.mark.parametrize("path", ["/p", "/deep/er/path.html", "/"])
    @pytest.mark.parametrize("query", ["", "?q=1", "?a=b&c=d"])
    def test_rewrite_then_reapply_is_stable(
        self, mirror_config, rewrite_context, path, query
    ):
        source = f"{mirror_config.origin}{mirror_config.origin_path}{path}{query}"
        once = rewrite_url(source, rewrite_context, mirror_config)
        assert once == f"{rewrite_context.request_origin}{mirror_config.local_prefix}{path}{query}"
        assert rewrite_url(once, rewrite_context, mirror_config) == once


class TestHostMap:
    @pytest.mark.parametrize("host", ["github.com", "gist.github.com", "a.b.github.com"])
    def test_exact_and_suffix_hosts_fully_replaced(
        self, mirror_config, rewrite_context, host
    ):
        result = rewrite_url(f"http://{host}/path", rewrite_context, mirror_config)
        assert result == "http://facebook.com/path"

    def test_query_and_fragment_kept(self, mirror_config, rewrite_context):
        result = rewrite_url(
            "https://www.google.com/search?q=x#r", rewrite_context, mirror_config
        )
        assert result == "https://microsoft.com/search?q=x#r"

    def test_lookalike_host_not_matched(self, mirror_config, rewrite_context):
        url = "https://notgithub.com/x"
        assert rewrite_url(url, rewrite_context, mirror_config) == url

    def test_protocol_relative_gets_https(self, mirror_config, rewrite_context):
        result = rewrite_url("//github.com/a.png", rewrite_context, mirror_config)
        assert result == "https://facebook.com/a.png"

    def test_first_declared_entry_wins(self, rewrite_context):
        cfg = MirrorConfig.create(
            origin="https://upstream.example",
            host_map=[("github.com", "first.example"), ("api.github.com", "second.example")],
        )
        result = rewrite_url("https://api.github.com/v1", rewrite_context, cfg)
        assert result == "https://first.example/v1"

    def test_reordered_table_changes_winner(self, rewrite_context):
        cfg = MirrorConfig.create(
            origin="https://upstream.example",
            host_map=[("api.github.com", "second.example"), ("github.com", "first.example")],
        )
        result = rewrite_url("https://api.github.com/v1", rewrite_context, cfg)
        assert result == "https://second.example/v1"

    def test_unknown_host_unchanged(self, mirror_config, rewrite_context):
        url = "https://elsewhere.example/x?y=1"
        assert rewrite_url(url, rewrite_context, mirror_config) == url

    def test_unknown_protocol_relative_unchanged(self, mirror_config, rewrite_context):
        url = "//elsewhere.example/x"
        assert rewrite_url(url, rewrite_context, mirror_config) == url


class TestRootRelative:
    def test_origin_path_replaced(self, mirror_config, rewrite_context):
        assert rewrite_url("/zrf/img/a.png", rewrite_context, mirror_config) == "/a/img/a.png"

    def test_other_paths_prefixed(self, mirror_config, rewrite_context):
        assert rewrite_url("/img/a.png", rewrite_context, mirror_config) == "/a/img/a.png"

    def test_empty_origin_path_always_prefixes(self, rewrite_context):
        cfg = MirrorConfig.create(origin="https://upstream.example", local_prefix="/a")
        assert rewrite_url("/x?y=1", rewrite_context, cfg) == "/a/x?y=1"

    def test_whitespace_trimmed_when_rewritten(self, mirror_config, rewrite_context):
        assert rewrite_url("  /x  ", rewrite_context, mirror_config) == "/a/x"


class TestLeftAlone:
    @pytest.mark.parametrize(
        "candidate",
        [
            "data:image/png;base64,AAAA",
            "javascript:void(0)",
            "blob:https://upstream.example/abc",
            "#anchor",
            "relative/path.html",
            "mailto:a@b.c",
            "",
        ],
    )
    def test_unchanged(self, mirror_config, rewrite_context, candidate):
        assert rewrite_url(candidate, rewrite_context, mirror_config) == candidate

    @pytest.mark.parametrize(
        "local_prefix,host_map",
        [("", ()), ("/a", [("github.com", "facebook.com")]), ("/x/y", [("example", "z")])],
    )
    def test_opaque_unchanged_under_any_configuration(
        self, rewrite_context, local_prefix, host_map
    ):
        cfg = MirrorConfig.create(
            origin="https://upstream.example", local_prefix=local_prefix, host_map=host_map
        )
        for value in ("data:image/png;base64,AAAA", "javascript:void(0)"):
            assert rewrite_url(value, rewrite_context, cfg) == value

    def test_unparseable_url_returned_as_is(self, mirror_config, rewrite_context):
        bad_port = "https://upstream.example:99999/x"
        assert rewrite_url(bad_port, rewrite_context, mirror_config) == bad_port

        bad_ipv6 = "http://[::1/x"
        assert rewrite_url(bad_ipv6, rewrite_context, mirror_config) == bad_ipv6


class TestRewriteUrlList:
    def test_srcset_candidates_rewritten_independently(
        self, mirror_config, rewrite_context
    ):
        result = rewrite_url_list(
            "/img/a.png 1x, https://github.com/b.png 2x", rewrite_context, mirror_config
        )
        assert result == "/a/img/a.png 1x, https://facebook.com/b.png 2x"

    def test_width_descriptors_preserved(self, mirror_config, rewrite_context):
        result = rewrite_url_list(
            "https://upstream.example/zrf/s.jpg 480w,https://upstream.example/zrf/l.jpg 1080w",
            rewrite_context,
            mirror_config,
        )
        assert result == (
            "https://mirror.test/a/s.jpg 480w, https://mirror.test/a/l.jpg 1080w"
        )

    def test_single_candidate_without_descriptor(self, mirror_config, rewrite_context):
        assert rewrite_url_list("/one.png", rewrite_context, mirror_config) == "/a/one.png"

    def test_unrewritable_candidates_kept(self, mirror_config, rewrite_context):
        result = rewrite_url_list(
            "a.png 1x, #frag 2x", rewrite_context, mirror_config
        )
        assert result == "a.png 1x, #frag 2x"

    def test_comma_inside_url_is_split(self, mirror_config, rewrite_context):
        # Commas are always separators; data: URLs with commas get a space added
        result = rewrite_url_list(
            "data:image/png;base64,AAAA 2x", rewrite_context, mirror_config
        )
        assert result == "data:image/png;base64, AAAA 2x"
