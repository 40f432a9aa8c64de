# coding=utf-8
from setuptools import setup

setup(
    name='deproto',
    description='schema-less protobuf wire data decoding '
                'and pretty printing',
    version='0.1',
    license='MIT',
    classifiers=[
        'Development Status :: 4 - Beta',
        'Programming Language :: Python :: 3 :: Only',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'License :: OSI Approved :: MIT License',
    ],

    py_modules=[
        'deproto',
        'deproto_cli',
    ],

    package_dir={'': "src"},

    install_requires=[
        'click>=8.0',
    ],
    extras_require={
        'test': [
            'flake8',
            'pytest',
            'pytest-cov',
        ]
    },
    entry_points={
        'console_scripts': [
            'deproto = deproto_cli:main',
        ],
    },
)
