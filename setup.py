import re

import setuptools

with open("pypwbridge/__init__.py", "r") as fh:
    version_tuple = re.search(r"^version_tuple = \((\d+), (\d+), (\d+)\)", fh.read(), re.M).groups()
__version__ = '.'.join(version_tuple)

with open("README.md", "r") as fh:
    long_description = fh.read()

setuptools.setup(
    name="pypwbridge",
    version=__version__,
    author="pypwbridge contributors",
    description="Resilient local API client and derived sensor states for Tesla Energy Gateway home-automation bridges",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=["pypwbridge", "pypwbridge.*"]),
    python_requires=">=3.9",
    install_requires=[
        'requests',
        'pydantic>=2.0',
        'pydantic-settings>=2.0',
        'python-dotenv',
        'python-dateutil',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
    entry_points={
        'console_scripts': [
            'pypwbridge=pypwbridge.__main__:main',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
