from setuptools import setup, find_packages

setup(
    name='kbootstrap',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    package_data={
        'kbootstrap.modules.distros': ['templates/*.j2'],
    },
    install_requires=[
        'typer[all]',
        'pydantic>=2',
        'PyYAML',
        'jinja2',
        'jsonschema',
        'paramiko',
        'cryptography',
        'python-dotenv',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'kbootstrap=kbootstrap.cli:run'
        ]
    },
    description='Bootstrap highly available Kubernetes clusters with k3s or kubeadm',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
)
