from pathlib import Path
from setuptools import setup, find_packages

# Read the long description from README.md
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding="utf-8")

# Core dependencies (distances, neighbor sets, evaluation and reporting)
core_deps = [
    "jax",
    "numpy",
    "scipy",
    "tqdm",
    "pandas",
    "plotly",
    "loguru",
    "scikit-learn"
]

# Dependencies for running the unit tests
test_deps = [
    "pytest"
]

setup(
    name="hubcv",
    version="0.1.0",
    description="Hubness-aware kNN classification and repeated cross-validation",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["hubcv", "hubcv.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
    install_requires=core_deps,
    extras_require={
        "test": test_deps,
        "all": test_deps,
    },
)
