"""Read-State Tracker."""
