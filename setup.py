from setuptools import setup

setup(
    name='houghforest',
    version='1.0',
    py_modules=[
        'training_data',
        'hough_options',
        'thresholds',
        'split_search',
        'tree_builder',
        'voting',
        'forest_io',
        'hough_forest',
    ],
    python_requires='>=3.9',
    install_requires=['numpy'],
    extras_require={'test': ['pytest']},
    description='Multi-class Hough forests trained on self-voting examples',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
)
