"""Setup configuration for SERP Outreach Pipeline."""

from setuptools import setup

setup(
    name="serp_outreach",
    version="1.0.0",
    description="SERP Outreach Pipeline - keyword to ranked, validated outreach leads",
    author="Mark Lerner",
    py_modules=["outreach_pipeline", "log_capture"],
    python_requires=">=3.9",
    install_requires=[],
    extras_require={
        "test": [
            "pytest>=7.4.3",
            "pytest-cov>=4.1.0",
            "pytest-mock>=3.12.0",
            "pytest-xdist>=3.5.0",
            "pytest-timeout>=2.2.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "outreach-pipeline=outreach_pipeline:main",
        ],
    },
)
