# setup.py
from setuptools import setup, find_packages

setup(
    name="site_diff",
    version="0.1.0",
    description="Асинхронное визуальное регрессионное сравнение сайтов SiteDiff",
    packages=find_packages(exclude=("tests", "tests.*")),
    package_data={"site_diff": ["templates/*.j2"]},
    install_requires=[
        "aiohttp>=3.9",
        "lxml>=5.0",
        "pydantic>=2.5",
        "PyYAML>=6.0",
        "click>=8.1",
        "Jinja2>=3.1",
        "Pillow>=10.1",
        "numpy>=1.26",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "site-diff=site_diff.cli:main",
        ],
    },
    python_requires=">=3.11",
)
