class TourCompassError(Exception):
    """Base class for all availability engine errors."""


class TourNotFoundError(TourCompassError):
    def __init__(self, tour_id):
        super().__init__(f"Tour with ID {tour_id} not found")
        self.tour_id = tour_id


class AvailabilityNotFoundError(TourCompassError):
    def __init__(self, tour_id):
        super().__init__(f"No availability record for tour {tour_id}")
        self.tour_id = tour_id


class AvailabilityExistsError(TourCompassError):
    def __init__(self, tour_name):
        super().__init__(f"Availability already exists for: {tour_name}")
        self.tour_name = tour_name


class InvalidStatusError(TourCompassError):
    pass
