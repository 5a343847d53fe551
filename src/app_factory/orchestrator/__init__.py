"""Task backlog, scheduler and the autonomous plan/execute/test/correct loop."""
