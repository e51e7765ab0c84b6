# type: ignore
"""Fairly minimal certcycle setup.py for setuptools.

Renews and deploys a standalone-mode certificate for a single web server.
"""
import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

setuptools.setup(
    name="certcycle",
    version="0.1.0",
    description="Renew and deploy the TLS certificate of a web server with certbot in standalone mode.",
    license="BSD License",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=["certcycle"],
    entry_points={"console_scripts": ["certcycle = certcycle.certcycle:main"]},
    classifiers=[
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "License :: OSI Approved :: BSD License",
        "Operating System :: POSIX",
    ],
    python_requires=">=3.10",
    install_requires=["certbot", "cryptography", "PyYAML", "pid", "pydantic", "pydantic-settings"],
    extras_require={"test": ["pytest"]},
    include_package_data=True,
)
