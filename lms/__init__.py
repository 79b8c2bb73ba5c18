"""Assessment grading workflow and video upload pipeline."""
