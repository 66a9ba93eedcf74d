from setuptools import setup, find_packages


setup(
    name='torch_dsvd',
    version='0.1.0',
    packages=find_packages(include=['torch_dsvd', 'torch_dsvd.*']),
    install_requires=[
        'torch>=1.8.0',
        'numpy',
        'h5py',
    ],
    extras_require={
        'test':['pytest','numpy'],
    },
    entry_points={
        'console_scripts': ['torch-dsvd=torch_dsvd.__main__:main'],
    }
)
