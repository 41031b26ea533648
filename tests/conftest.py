import pytest

from tests._harness import make_asset_tree


@pytest.fixture
def assets(tmp_path):
    """Paths of a freshly built asset tree (``public``, ``uv``, ``base``)."""
    return make_asset_tree(tmp_path)
