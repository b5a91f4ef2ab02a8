from setuptools import setup

setup(name='DirtyReads',
      version='1.0',
      description='Simulated dirty-read and linearizability tests for a partitioned,'
                  ' replicated store',
      python_requires='>=3.10',
      py_modules=['client', 'cluster', 'dirty_read', 'experiment', 'history',
                  'linearizability', 'nemesis', 'params', 'perf', 'prob', 'register',
                  'run', 'sim_testcase', 'simulate', 'store'],
      install_requires=['matplotlib', 'numpy', 'omegaconf', 'pandas', 'PyYAML'],
      extras_require={'test': ['pytest']},
      entry_points={'console_scripts': ['dirty-reads=run:main']})
