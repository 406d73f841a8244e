import re

from setuptools import setup

with open("tapbuilder/__init__.py") as init_file:
    __version__ = re.search(r'^__version__ = "([^"]+)"', init_file.read(), re.M).group(1)

with open("README.rst") as readme:
    long_description = readme.read()

setup(
    name="tap-builder",
    version=__version__,
    description="Bitcoin taproot script path transaction builder and signer",
    long_description=long_description,
    author="The tapbuilder developers",
    license="MIT",
    keywords="bitcoin taproot psbt tapscript transactions",
    install_requires=[
        "base58check>=1.0.2,<2.0",
        "bech32>=1.2",
        "coincurve>=18.0.0",
        "python-bitcoinrpc>=1.0,<2.0",
        "hdwallet~=3.0",
        "loguru>=0.7",
    ],
    extras_require={
        "test": ["pytest"],
    },
    packages=["tapbuilder", "tapbuilder.builders"],
    python_requires=">=3.9",
    zip_safe=False,
)
