"""
Hough Forest

A multi-class Hough forest: an ensemble of randomized decision trees whose
leaves store training examples, so that a query feature vector can be routed
to a leaf and cast weighted Hough votes for the parent objects of the
examples stored there.
"""
