from setuptools import setup

setup(
    name='discord_session',
    version='0.1.0',
    description='Discord gateway and voice client, sans-I/O with an asyncio driver.',
    packages=['discord_session'],
    python_requires='>=3.8',
    install_requires=['wsproto', 'PyNaCl>=1.5'],
    extras_require={
        'etf': ['erlpack'],
        'perf': ['ujson'],
        'test': ['pytest', 'pytest-asyncio'],
    },
)
