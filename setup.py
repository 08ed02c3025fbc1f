from setuptools import setup, find_packages

setup(
    name="garch-var-backtest",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["models", "errors", "run_backtest"],
    install_requires=[
        "numpy>=1.22",
        "pandas",
        "scipy>=1.7",
        "arch>=5.0",
        "statsmodels",
        "tqdm",
        "psutil",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": ["var-backtest=run_backtest:main"],
    },
    python_requires=">=3.9",
)
