from setuptools import setup, find_packages
from os import path

here = path.abspath(path.dirname(__file__))

# Get the long description from the README file
with open(path.join(here, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='blockray',
    version='0.0.1',
    description='A minimal block sparse tensor python library',
    long_description=long_description,
    long_description_content_type='text/markdown',
    classifiers=[
        'Development Status :: 3 - Alpha',
        'License :: OSI Approved :: Apache Software License',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
    ],
    keywords='tensor block sparse autoray',
    packages=find_packages(exclude=['docs', 'tests']),
    python_requires='>=3.9',
    install_requires=[
        'autoray',
        'numpy',
        'scipy',
    ],
    extras_require={
        "tests": [
            "coverage",
            "pytest",
            "pytest-cov",
        ],
    },
    include_package_data=True,
)
