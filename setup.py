"""
Setup file.
"""

import os

from setuptools import setup

URL = "https://github.com/zackees/gatebuild"
KEYWORDS = "build system kconfig configuration incremental compiler toolchain kernel"
HERE = os.path.dirname(os.path.abspath(__file__))



if __name__ == "__main__":
    setup(
        maintainer="Zachary Vorhies",
        keywords=KEYWORDS,
        url=URL,
        include_package_data=True)
