from pathlib import Path

from setuptools import find_packages, setup


def read_version(root: Path) -> str:
    """Read ``__version__`` from the package without importing it."""
    for line in (root / "usd1_radar" / "__init__.py").read_text().splitlines():
        if line.startswith("__version__"):
            return line.split("=", 1)[1].strip().strip("\"'")
    raise RuntimeError("unable to find __version__")


ROOT = Path(__file__).parent

setup(
    name="usd1-radar",
    version=read_version(ROOT),
    description="Discovery, verification and enrichment of USD1-paired BonkFun tokens on Solana",
    packages=find_packages(include=["usd1_radar", "usd1_radar.*"]),
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.9",
        "cachetools>=5.3",
        "orjson>=3.9",
        "pydantic>=2.0",
        "redis>=5.0.1",
        "solana>=0.30,<0.40",
        "solders>=0.18",
    ],
    extras_require={
        "test": [
            "anyio>=4.0",
            "pytest>=7.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "usd1-radar=usd1_radar.__main__:main",
        ],
    },
)
