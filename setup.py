from setuptools import setup, find_packages

setup(
    name='kubestrap',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    install_requires=[
        'typer[all]',
        'fastapi',
        'uvicorn',
        'kubernetes',
        'python-dotenv',
        'requests',
        'urllib3',
        'starlette',
        'pydantic>=2',
        'PyYAML',
        'paramiko',
        'jsonschema',
    ],
    extras_require={
        'test': [
            'pytest',
            'httpx',
        ],
    },
    entry_points={
        'console_scripts': [
            'kubestrap=kubestrap.cli:app'
        ]
    },
    author='Your Name',
    description='CLI and API toolkit for bootstrapping highly-available kubeadm clusters',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
)
