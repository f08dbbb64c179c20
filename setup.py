from setuptools import find_packages, setup

setup(
    name="jaxnlls",
    version="0.0",
    description="Trust region nonlinear least squares in Jax",
    url="http://github.com/brentyi/jaxnlls",
    author="brentyi",
    author_email="brentyi@berkeley.edu",
    license="BSD",
    packages=find_packages("src"),
    package_dir={"": "src"},
    package_data={"jaxnlls": ["py.typed"]},
    python_requires=">=3.10",
    install_requires=[
        "jax>=0.4.0",
        "jaxlib",
        "jax_dataclasses>=1.0.0",
        "loguru",
        "numpy",
        "scipy",
        "termcolor",
    ],
    extras_require={
        "testing": [
            "pytest",
            "pytest-cov",
        ],
        "examples": [
            "tyro",
        ],
        "type-checking": [
            "mypy",
            "types-termcolor",
        ],
    },
)
