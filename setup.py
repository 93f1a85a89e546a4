#!/usr/bin/python3
# SPDX-License-Identifier: LGPL-2.1-or-later

from setuptools import find_packages, setup

setup(
    name="docker-to-uefi",
    version="1",
    description="Turn container images into UEFI bootable raw disk images",
    license="LGPLv2+",
    python_requires=">=3.10",
    packages=find_packages(".", exclude=["tests", "tests.*"]),
    extras_require={"test": ["pytest"]},
    entry_points={"console_scripts": ["docker-to-uefi = docker_to_uefi.__main__:main"]},
)
