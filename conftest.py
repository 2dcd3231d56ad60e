# Ensure tests import modules from this service directory first, so
# `import site_mirror.*` resolves to the working tree without installing it.
import os
import sys

import pytest

SERVICE_ROOT = os.path.dirname(__file__)

if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from site_mirror.rewrite import MirrorConfig, RewriteContext  # noqa: E402

TEST_ORIGIN = "https://upstream.example"
TEST_REQUEST_ORIGIN = "https://mirror.test"


@pytest.fixture
def mirror_config():
    """Configuration mirroring upstream.example/zrf under /a."""
    return MirrorConfig.create(
        origin=TEST_ORIGIN,
        origin_path="/zrf",
        local_prefix="/a",
        host_map=[("github.com", "facebook.com"), ("google.com", "microsoft.com")],
        cookie_domain_map=[("x.com", "youtube.com"), ("discord.com", "tiktok.com")],
    )


@pytest.fixture
def rewrite_context():
    return RewriteContext(
        request_origin=TEST_REQUEST_ORIGIN,
        target_url=f"{TEST_ORIGIN}/zrf/",
    )
