from setuptools import find_packages, setup

setup(
    name="ci-janitor",
    version="0.1.0",
    packages=find_packages(
        include=[
            "janitor_common",
            "janitor_common.*",
            "janitor_controller",
            "janitor_controller.*",
            "janitor_admin",
            "janitor_admin.*",
        ]
    ),
    install_requires=[
        "click>=8.1.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ci-janitor=janitor_controller.__main__:main",
            "ci-janitor-admin=janitor_admin.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
