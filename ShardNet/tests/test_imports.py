import importlib
import os
from pathlib import Path

import pytest

PACKAGE_ROOT = Path(__file__).parent.parent


def get_all_modules(root_dir):
    modules = []
    for root, dirs, files in os.walk(root_dir):
        dirs[:] = [d for d in dirs if not d.startswith('.') and d not in ('tests', '__pycache__')]
        for file in files:
            if file.endswith('.py'):
                rel_path = os.path.relpath(os.path.join(root, file), root_dir.parent)
                module_name = os.path.splitext(rel_path)[0].replace(os.path.sep, '.')
                if module_name.endswith('.__init__'):
                    module_name = module_name[:-9]
                modules.append(module_name)
    return sorted(modules)


@pytest.mark.parametrize("module_name", get_all_modules(PACKAGE_ROOT))
def test_import_module(module_name):
    try:
        importlib.import_module(module_name)
    except ImportError as e:
        pytest.fail(f"Failed to import {module_name}: {e}")


def test_public_api():
    import ShardNet

    for name in ShardNet.__all__:
        assert hasattr(ShardNet, name), name
