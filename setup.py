#!/usr/bin/env python


from setuptools import setup, find_namespace_packages


setup(
    name="breakpoint-density",
    version="1.0.0",
    description="Bin structural-variant breakpoints into fixed-width genome windows, masked by callability",
    package_dir={"": "src"},
    packages=find_namespace_packages("src", include=["breakpoint_density", "breakpoint_density.*"]),
    entry_points={
        "console_scripts": [
            "breakpoint-density=breakpoint_density.compute_breakpoint_density:main",
            "breakpoint_density=breakpoint_density.compute_breakpoint_density:main"
        ]
    },
    python_requires=">3.8",
    install_requires=[
        "numpy",
        "pandas",
        "tqdm",
        "psutil",
        "pysam>=0.23.3",
        "dill",
        "pympler"
    ],
    extras_require={
        "tests": ["pytest", "pytest-cov"]
    },
    include_package_data=True,
    zip_safe=False
)
