#!/usr/bin/env python3
"""
Verify that the statistics and plotting stack is importable.

Usage:
    python scripts/verify_deps.py
"""

import importlib
import sys

# (import name, distribution name on the index)
REQUIRED_PACKAGES = [
    ('pandas', 'pandas'),
    ('numpy', 'numpy'),
    ('scipy', 'scipy'),
    ('lifelines', 'lifelines'),
    ('matplotlib', 'matplotlib'),
    ('seaborn', 'seaborn'),
    ('sklearn', 'scikit-learn'),
    ('yaml', 'pyyaml'),
    ('pydantic', 'pydantic'),
    ('pydantic_settings', 'pydantic-settings'),
    ('dotenv', 'python-dotenv'),
]


def main():
    print('🔍 Verifying cem-survival dependencies...')
    print('=' * 60)
    print()

    missing = []
    for module_name, dist_name in REQUIRED_PACKAGES:
        try:
            module = importlib.import_module(module_name)
        except ImportError:
            print(f'✗ {dist_name:20} NOT INSTALLED')
            missing.append(dist_name)
            continue
        print(f'✓ {dist_name:20} {getattr(module, "__version__", "unknown")}')

    print()
    print('=' * 60)
    print(f'📊 Summary: {len(REQUIRED_PACKAGES) - len(missing)}/{len(REQUIRED_PACKAGES)} packages installed')
    print()

    if missing:
        print(f'❌ Missing packages: {", ".join(missing)}')
        print('💡 Install with: pip install -e ".[test]"')
        return 1

    print('✅ All dependencies verified successfully!')
    return 0


if __name__ == '__main__':
    sys.exit(main())
