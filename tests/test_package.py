import glob
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

PACKAGE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "cadence"))


def test_every_module_opens_with_its_path_header():
    paths = sorted(glob.glob(os.path.join(PACKAGE_DIR, "*.py")))
    assert paths
    for path in paths:
        with open(path, encoding="utf-8") as handle:
            first = handle.readline().rstrip("\n")
        assert first == f"# cadence/{os.path.basename(path)}", path
