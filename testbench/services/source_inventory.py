"""Test source inventory.

Lists the media files under ``TESTBENCH_FILES_ROOT`` by category and the
URLs declared in ``<root>/test-urls.json``:

    <root>/images/*   <root>/audio/*   <root>/video/*   <root>/test-urls.json

File paths are returned relative to the root, which is how the executor
resolves a ``file_upload`` test_source.
"""

import json
import logging
import os

from testbench.integrations.analysis_gateway import detect_media_type

logger = logging.getLogger(__name__)

SOURCE_CATEGORIES = ("images", "audio", "video")
URLS_FILE = "test-urls.json"

_IGNORED_NAMES = {"README.md"}


def _list_category(root, category):
    category_dir = os.path.join(root, category)
    if not os.path.isdir(category_dir):
        return []
    files = []
    for name in sorted(os.listdir(category_dir)):
        full_path = os.path.join(category_dir, name)
        if name.startswith(".") or name in _IGNORED_NAMES or not os.path.isfile(full_path):
            continue
        files.append({
            "name": name,
            "path": f"{category}/{name}",
            "size": os.path.getsize(full_path),
            "media_type": detect_media_type(name),
        })
    return files


def _load_urls(root):
    urls_path = os.path.join(root, URLS_FILE)
    if not os.path.isfile(urls_path):
        return {}
    try:
        with open(urls_path, encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, ValueError) as exc:
        logger.warning("Could not read %s: %s", urls_path, exc)
        return {}


def list_test_sources(root):
    """Inventory of selectable test sources under ``root`` (None → empty inventory)."""
    if not root:
        return {"files_root": None, "files": {c: [] for c in SOURCE_CATEGORIES}, "urls": {}}
    return {
        "files_root": root,
        "files": {c: _list_category(root, c) for c in SOURCE_CATEGORIES},
        "urls": _load_urls(root),
    }
