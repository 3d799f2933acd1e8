from setuptools import setup, find_packages

setup(
    name="wpaudit",
    version="0.4.0",
    description="Health audits for remote WordPress installs over SSH/WP-CLI",
    author="soulmad",
    packages=find_packages(include=["wpaudit", "wpaudit.*"]),
    install_requires=[
        "requests",
        "pyyaml",
        "colorama",
        "beautifulsoup4",
        "paramiko",
        "SQLAlchemy>=2.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "wpaudit=wpaudit.cli:main",
        ],
    },
    python_requires=">=3.8",
)
