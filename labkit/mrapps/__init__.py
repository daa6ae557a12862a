"""Package reserved for MapReduce applications; it currently holds none."""