"""HTTP service that runs the learning platform's browser journeys on demand."""
