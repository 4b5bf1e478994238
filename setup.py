#!/usr/bin/env python3

from setuptools import setup, find_packages


def read_file(fn):
    with open(fn) as f:
        content = f.read()
    return content

setup(
    name="sampleflow",
    version="0.1.0",
    description="Sample-parallel dataflow engine for bioinformatics workflows",
    long_description=read_file("README.rst"),
    long_description_content_type="text/x-rst",
    license="GPL-3",
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Environment :: Console',
        'Intended Audience :: Science/Research',
        'License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)',
        'Natural Language :: English',
        'Operating System :: MacOS',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python :: 3',
        'Topic :: Scientific/Engineering :: Bio-Informatics',
    ],
    platforms=["linux", "macos"],
    keywords=("bioinformatics pipeline workflow dataflow "
              "assembly long-reads trimming"),
    packages=find_packages('src'),
    package_dir={'': 'src'},
    package_data={'sampleflow': ['etc/*.yml']},
    zip_safe=False,
    install_requires=[
        'click>8',
        'ruamel.yaml>0.15,<0.17.29',
        'pandas>=1.3',
        'coloredlogs',
        'xdg>=5',  # user paths
        'tqdm>=4.21.0',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-timeout',
            'pytest-xdist',
        ],
    },
    python_requires='>=3.8',
    include_package_data=True,
    entry_points='''
        [console_scripts]
        sampleflow=sampleflow.cli:main
    ''',
)
