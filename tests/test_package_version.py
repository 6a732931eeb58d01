from importlib.metadata import PackageNotFoundError, version

import persona_lab


def test_version_matches_installed_package_metadata() -> None:
    try:
        installed_version = version("persona-lab")
    except PackageNotFoundError:
        assert persona_lab.__version__ == "0.0.0"
    else:
        assert persona_lab.__version__ == installed_version
