from setuptools import setup
from glob import glob
import os

package_name = 'surfel_mapper'

setup(
    name=package_name,
    version='0.1.0',
    packages=[
        package_name,
        package_name + '.nodes',
        package_name + '.core',
        package_name + '.utils',
    ],
    data_files=[
        ('share/ament_index/resource_index/packages',
            ['resource/' + package_name]),
        ('share/' + package_name, ['package.xml']),
        (os.path.join('share', package_name, 'launch'), glob('launch/*.launch.py')),
        (os.path.join('share', package_name, 'config'), glob('config/*.yaml')),
    ],
    install_requires=['setuptools', 'numpy', 'scipy', 'pyyaml', 'open3d'],
    extras_require={
        'test': ['pytest'],
    },
    zip_safe=True,
    maintainer='root',
    maintainer_email='root@todo.todo',
    description='Incremental surfel map fusion of posed RGB-D keyframes',
    license='TODO',
    tests_require=['pytest'],
    entry_points={
        'console_scripts': [
            'surfel_mapper_node = surfel_mapper.nodes.surfel_mapper_node:main',
        ],
    },
)
