from setuptools import setup, find_packages


setup(
    name='torch_blockop',
    version='0.1.0',
    packages=find_packages(include=['torch_blockop', 'torch_blockop.*']),
    install_requires=[
        'torch>=1.13.0',
    ],
    extras_require={
        'test':['pytest','numpy','scipy'],
    }
)
