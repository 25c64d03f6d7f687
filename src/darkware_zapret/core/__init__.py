"""Engine supervisor and its collaborators."""
