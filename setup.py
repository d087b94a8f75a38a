from setuptools import setup, find_packages

setup(
    name='gpuctl',
    version='0.1.0',
    packages=find_packages(exclude=['gpuctl.tests', 'gpuctl.tests.*']),
    include_package_data=True,
    package_data={
        'gpuctl.modules.cluster.installer': ['templates/*.j2'],
    },
    install_requires=[
        'typer[all]',
        'rich',
        'pydantic>=2',
        'pyyaml',
        'jinja2',
        'tenacity',
        'tomlkit',
        'python-dotenv',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    entry_points={
        'console_scripts': [
            'gpuctl=gpuctl.cli:run'
        ]
    },
    author='Your Name',
    description='Provision GPU compute cluster nodes: drivers, mesh networking, shared storage and services',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
    python_requires='>=3.9',
)
