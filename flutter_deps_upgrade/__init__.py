"""flutter-deps-upgrade: upgrade Flutter/Dart dependencies across a workspace."""
