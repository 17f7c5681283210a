from setuptools import setup
setup(
    name='mbtile',
    version='0.1',
    description='Extract the tiles inside a bounding box from one MBTiles file to another.',
    py_modules=['mbtile'],
    python_requires='>=3.7',
    install_requires=[],
    extras_require={
        'test': ['pytest'],
    },
    entry_points='''
        [console_scripts]
        mbtile=mbtile:main
    ''',
)
