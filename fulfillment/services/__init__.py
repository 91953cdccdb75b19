# Overview: Domain services; each public operation runs as one atomic scope.
