"""Setup script for ispyc."""
from setuptools import find_packages, setup


setup(
    name="ispyc",
    version="0.1.0",
    description=(
        "Multi-ISA build orchestration and Python bindings for Intel(r) SPMD Program "
        "Compiler kernels"
    ),
    packages=find_packages(include=["ispyc", "ispyc.*"]),
    package_data={"ispyc": ["templates/*.j2", "templates/*.c"]},
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "colorama>=0.4",
        "jinja2>=3.1",
        "libclang>=16.0",
        "packaging>=23.0",
        "pydantic>=2.5",
        "setuptools>=68.0",
        "tomlkit>=0.12",
    ],
    extras_require={
        "test": ["pytest>=7.4"],
    },
    zip_safe=False,
)
