#!/usr/bin/env python3
"""
Setup script for browsersync

Installation:
    pip install .
    pip install -e .[dev]  # Development mode with test tooling

Distribution:
    python setup.py sdist bdist_wheel
    twine upload dist/*
"""

from setuptools import setup
import re

# Read version from browsersync.py
with open('browsersync.py', 'r', encoding='utf-8') as f:
    content = f.read()
    version_match = re.search(r'^__version__\s*=\s*[\'"]([^\'"]*)[\'"]', content, re.MULTILINE)
    if version_match:
        version = version_match.group(1)
    else:
        raise RuntimeError("Unable to find version string in browsersync.py")

# Read long description from README
with open('README.md', 'r', encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='browsersync',
    version=version,
    description='Update reconciliation core for browser data sync - change collapsing queue, conflict fingerprint index, deterministic field encryption and the protocol4 wire format.',
    long_description=long_description,
    long_description_content_type='text/markdown',
    author='browsersync contributors',
    py_modules=['browsersync'],
    python_requires='>=3.8',
    install_requires=[
        'cryptography>=3.1',
        'xxhash>=3.0.0',
        'lz4>=4.0.0',
        'zstandard>=0.20.0',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0.0',
            'pytest-cov>=4.0.0',
            'mypy>=1.0.0',
            'black>=23.0.0',
            'flake8>=6.0.0',
            'isort>=5.12.0',
        ],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: Apache Software License',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Internet :: WWW/HTTP :: Browsers',
        'Topic :: Security :: Cryptography',
        'Topic :: Software Development :: Libraries :: Python Modules',
    ],
    keywords='sync browser bookmarks conflict-resolution encryption protocol4',
    license='Apache-2.0',
    platforms=['any'],
    zip_safe=False,
)
