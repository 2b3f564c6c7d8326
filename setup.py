# Copyright DataStax, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

from setuptools import setup

from cqlsync import __version__

long_description = ""
with open("README.rst") as f:
    long_description = f.read()


def run_setup():

    dependencies = []

    setup(
        name='cqlsync-driver',
        version=__version__,
        description='Synchronous Python driver for the Cassandra native protocol',
        long_description=long_description,
        long_description_content_type='text/x-rst',
        packages=['cqlsync'],
        keywords='cassandra,cql,driver',
        include_package_data=True,
        python_requires='>=3.8',
        install_requires=dependencies,
        extras_require={
            'test': ['pytest', 'mock'],
        },
        classifiers=[
            'Development Status :: 4 - Beta',
            'Intended Audience :: Developers',
            'License :: OSI Approved :: Apache Software License',
            'Natural Language :: English',
            'Operating System :: OS Independent',
            'Programming Language :: Python',
            'Programming Language :: Python :: 3',
            'Programming Language :: Python :: Implementation :: CPython',
            'Programming Language :: Python :: Implementation :: PyPy',
            'Topic :: Software Development :: Libraries :: Python Modules'
        ])

run_setup()
