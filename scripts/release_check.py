"""Release verification script.

Run from the repository root before tagging a release.
"""

import re
import subprocess
import sys


def check_version():
    """__version__ matches pyproject.toml."""
    import shardboost

    with open("pyproject.toml") as f:
        match = re.search(r'^version\s*=\s*"([^"]+)"', f.read(), re.MULTILINE)
    if match is None:
        print("❌ Could not find a version in pyproject.toml")
        return False
    if shardboost.__version__ != match.group(1):
        print(f"❌ Version mismatch: __init__.py={shardboost.__version__}, pyproject.toml={match.group(1)}")
        return False
    print(f"✅ Version: {shardboost.__version__}")
    return True


def check_public_api():
    """Everything in __all__ is importable."""
    import shardboost as sb

    missing = [name for name in sb.__all__ if not hasattr(sb, name)]
    if missing:
        print(f"❌ Missing from the package: {missing}")
        return False
    print(f"✅ All {len(sb.__all__)} public names available")
    return True


def check_backend():
    """The default native backend can be created."""
    import shardboost as sb

    backend = sb.get_backend()
    print(f"✅ Backend: {backend!r}")
    return True


def run_tests():
    result = subprocess.run(
        [sys.executable, "-m", "pytest", "tests/", "-q", "--tb=short"],
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        print("❌ Tests failed")
        print(result.stdout[-2000:])
        return False
    print("✅ All tests pass")
    return True


def check_package_build():
    result = subprocess.run(["uv", "build"], capture_output=True, text=True)
    if result.returncode != 0:
        print("❌ Package build failed")
        print(result.stderr[-2000:])
        return False
    print("✅ Package builds successfully")
    return True


def main():
    checks = [
        ("Version", check_version),
        ("Public API", check_public_api),
        ("Backend", check_backend),
        ("Tests", run_tests),
        ("Package Build", check_package_build),
    ]

    results = {}
    for name, check_fn in checks:
        print(f"\n{name}...")
        try:
            results[name] = check_fn()
        except Exception as e:
            print(f"❌ {name} failed with exception: {e}")
            results[name] = False

    print("\n" + "=" * 60)
    for name, passed in results.items():
        print(f"  {'✅' if passed else '❌'} {name}")
    print("=" * 60)
    return 0 if all(results.values()) else 1


if __name__ == "__main__":
    sys.exit(main())
