#!/usr/bin/env python3
# =============================================================================
#  binsig — setup.py
#
#  Runtime dependencies live in requirements.txt, the version in
#  binsig/__init__.py.
#
#  Typical use:
#      pip install -e ".[dev]"
#      python -m pytest
# =============================================================================

from __future__ import annotations

import re
from pathlib import Path

from setuptools import setup, find_packages

# ---------------------------------------------------------------------------
#  Read version from binsig/__init__.py so we have a single source of truth.
# ---------------------------------------------------------------------------
_HERE = Path(__file__).resolve().parent


def _read_version() -> str:
    """Extract ``__version__`` from binsig/__init__.py."""
    init = _HERE / "binsig" / "__init__.py"
    text = init.read_text(encoding="utf-8")
    match = re.search(r'^__version__\s*=\s*"([^"]+)"', text, re.MULTILINE)
    if match:
        return match.group(1)
    return "0.0.0"


def _read_requirements() -> list[str]:
    """Runtime requirements, one per line, comments stripped."""
    lines = (_HERE / "requirements.txt").read_text(encoding="utf-8").splitlines()
    requirements = [ln.split("#", 1)[0].strip() for ln in lines]
    return [req for req in requirements if req]


setup(
    name="binsig",
    version=_read_version(),
    description=(
        "Interprocedural abstract interpretation for recovering function "
        "signatures and variadic argument locations from lifted binaries."
    ),
    license="MIT",
    author="binsig contributors",
    python_requires=">=3.10",
    packages=find_packages(
        include=[
            "binsig",
            "binsig.*",
        ],
        exclude=[
            "tests",
            "tests.*",
        ],
    ),
    install_requires=_read_requirements(),
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-cov>=4.0",
            "ruff>=0.4",
            "mypy>=1.10",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Topic :: Security",
        "Topic :: Software Development :: Disassemblers",
    ],
    keywords=[
        "binary-analysis",
        "static-analysis",
        "abstract-interpretation",
        "calling-convention",
        "format-string",
        "program-analysis",
    ],
    zip_safe=False,
)
