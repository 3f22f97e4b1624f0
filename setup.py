from setuptools import setup

with open("requirements.txt") as f:
    required = f.read().splitlines()

exec(open("pydpmm/version.py").read())
setup(
    name="pydpmm",
    version=__version__,  # noqa: F821
    description="Dirichlet process mixture models with parallel split/merge sampling",
    author=["pydpmm developers"],
    install_requires=required,
    extras_require={"test": ["pytest"]},
    packages=["pydpmm"],
    python_requires=">=3.8",
)
