# setup.py
from setuptools import setup, find_packages

setup(
    name="site_lens",
    version="0.1.0",
    description="Сканер доступности и качества сайтов SiteLens",
    packages=find_packages(exclude=("tests", "tests.*")),
    install_requires=[
        "aiohttp>=3.9",
        "beautifulsoup4>=4.12",
        "pydantic>=2.5",
        "PyYAML>=6.0",
        "click>=8.1",
        "playwright>=1.40",
        "redis>=5.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "site-lens=site_lens.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
