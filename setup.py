#!/usr/bin/env python
# -*- coding: utf-8 -*-

from setuptools import setup, find_packages
from os.path import join, dirname

exec(open(join(dirname(__file__), 'plinth', 'release.py'), 'rb').read())
lib_name = 'plinth'

setup(
    name='plinth',
    version=version,
    description=description,
    long_description=long_desc,
    url=url,
    author=author,
    author_email=author_email,
    classifiers=[c for c in classifiers.split('\n') if c],
    license=license,
    scripts=['setup/plinth'],
    packages=find_packages(include=['plinth', 'plinth.*']),
    package_dir={'%s' % lib_name: 'plinth'},
    include_package_data=True,
    install_requires=[
        'werkzeug >= 2.3',
        'jinja2',
        'markupsafe',
        'passlib',
        'decorator',
        'cryptography',
        'babel >= 1.0',
    ],
    python_requires='>=3.10',
    extras_require={
        'test': ['pytest', 'freezegun'],
    },
    tests_require=[
        'pytest',
        'freezegun',
    ],
)
