# Command-line interface for the medrev revision engine
