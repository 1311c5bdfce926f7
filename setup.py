from pathlib import Path
import re
from setuptools import setup, find_namespace_packages

PROJECT_NAME = "evtexplain"

def get_project_property(prop, project):
    init_file = Path(project) / '__init__.py'
    value = re.search(f'(^|\n){prop} *= *"v?([^\n]+)"', open(init_file).read())
    return value.group(2)

with open("README.md", "r") as fh:

    long_description = fh.read()

    setup(

     name=PROJECT_NAME,  

     version=get_project_property('__version__', PROJECT_NAME),

     author="Nestor Sanchez",

     author_email="nestor.sag@gmail.com",

     packages = find_namespace_packages(include=['evtexplain', 'evtexplain.*']),

     python_requires='>=3.8',

     description="Local surrogate explanations for black-box extreme value estimators",

     license = "MIT",

     install_requires=[
        'pydantic>=1.8.2',
        'scipy>=1.7.1',
        'numpy>=1.21.2',
        'pandas',
        'statsmodels>=0.12',
        'tqdm'
    ],

     extras_require={
        'test': ['pytest'],
    },

     long_description=long_description,

     long_description_content_type="text/markdown",

     url="https://bitbucket.com/nestorsag/phd",

     classifiers=[

         "Programming Language :: Python :: 3",

         "License :: OSI Approved :: MIT License",

         "Operating System :: OS Independent",

     ]

 )
