from setuptools import setup, find_packages

setup(
    name='prebuilt',
    version='0.1.0',
    description='Provision prebuilt binary artifacts into isolated prefixes',
    packages=find_packages('src'),
    package_dir={'': 'src'},
    python_requires='>=3.10',
    install_requires=[
        'requests',
        'urllib3',
        'rich',
        'platformdirs',
        'PyYAML',
        'packaging',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-mock',
        ],
    },
)
