import io
from os.path import abspath, dirname, join

from setuptools import find_packages, setup

from owconf import __version__

with io.open("README.md", "rt", encoding="utf8") as f:
    readme = f.read()

base_path = dirname(abspath(__file__))

with open(join(base_path, "requirements.txt")) as req_file:
    requirements = req_file.readlines()

setup(
    name="owconf",
    version=__version__,
    description="Package feeds and build configurations for OpenWrt firmware",
    long_description=readme,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    install_requires=requirements,
    extras_require={
        "test": ["pytest", "pytest-httpserver", "fakeredis", "httpx"],
    },
    python_requires=">=3.9",
    zip_safe=False,
)
