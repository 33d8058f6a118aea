from setuptools import setup, find_packages

setup(
    name="adaptive-arb-pipeline",
    version="1.0.0",
    description="Adaptive cross-venue arbitrage opportunity pipeline with risk gating",
    author="Arbitrage Pipeline Team",
    python_requires=">=3.10",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    py_modules=["main"],
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#")
    ],
    extras_require={
        "dev": [
            line.strip()
            for line in open("requirements-dev.txt")
            if line.strip() and not line.startswith(("#", "-r"))
        ],
    },
    entry_points={
        "console_scripts": [
            "arb-pipeline=main:main",
        ],
    },
)
