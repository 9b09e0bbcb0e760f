from setuptools import setup, find_packages

setup(
    name="udpchannel",
    version="1.0.0",
    description="Asynchronous UDP unicast/multicast publish/subscribe channels",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "colorama",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "udpchannel-publish = udpchannel.publisher:main",
            "udpchannel-receive = udpchannel.receiver:main",
        ],
    },
    python_requires=">=3.10",
)
