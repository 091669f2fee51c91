from setuptools import setup, find_packages

setup(
    name="wg-mtu-tuner",
    version="0.1.0",
    description="Adaptive MTU tuning with online learning for WireGuard interfaces",
    author="wg-mtu-tuner Team",
    author_email="wg-mtu-tuner@example.com",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy>=1.22.0",
        "prometheus-client>=0.16.0",
        "pandas>=1.5.3",
        "pyyaml>=6.0",
        "pyroute2>=0.7.3",
        "matplotlib>=3.7.1",
    ],
    extras_require={
        "dev": [
            "pytest>=7.3.1",
            "black>=23.3.0",
            "isort>=5.12.0",
            "mypy>=1.2.0",
            "flake8>=6.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "wg-mtu-tune=mtu_tuner.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.9",
        "Topic :: System :: Networking",
    ],
    python_requires=">=3.9",
)
