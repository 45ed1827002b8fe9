from setuptools import setup


with open("README.md", "r", encoding='UTF-8') as f:
    readme = f.read()

classifiers = [
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Telecommunications Industry",
    "Topic :: Communications :: Telephony",
    "Topic :: System :: Logging",
]

keywords = ("asterisk", "manager", "interface",
            "asterisk-manager-interface", "ami", "asterisk-ami",
            "events", "gateway", "mysql", "asyncio")

setup(
    name='ami-gateway',
    version='0.1.0',
    packages=['amigate', 'amigate.session', 'amigate.dispatch'],
    url='https://github.com/XpycTee/ami-gateway',
    license='Apache-2.0 license',
    author='XpycTee',
    author_email='i@xpyctee.ru',
    description='Routes Asterisk Manager Interface events from many servers to log files and databases',
    long_description=readme,
    long_description_content_type="text/markdown",
    classifiers=classifiers,
    keywords=' '.join(keywords),
    install_requires=['aiohttp', 'PyMySQL', 'PyYAML'],
    extras_require={
        'test': ['pytest', 'pytest-asyncio'],
    },
    entry_points={
        'console_scripts': ['amigate=amigate.__main__:cli'],
    },
    python_requires='>=3.10'
)
