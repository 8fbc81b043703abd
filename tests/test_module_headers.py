import importlib

import pytest


MODULES = [
    'landmark_geometry',
    'cascade_regressor',
    'face_detector',
    'landmark_tracker',
    'tracking_evaluation',
    'run_tracking',
]


@pytest.mark.parametrize('name', MODULES)
def test_module_docstring_carries_license(name):
    module = importlib.import_module(name)
    assert module.__doc__.rstrip().endswith('License: MIT')
