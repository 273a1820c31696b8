'''
Define variables used across the entire applications
'''


# ----- signal conditioning -----
MIN_ACCURACY_METERS = 30.0          # worse than this is a network/cell fix
MIN_DISTANCE_FOR_SPEED_M = 10.0     # displacement below max(this, accuracy) is jitter
MAX_REALISTIC_SPEED_KMH = 200.0     # anything above is a GPS glitch
MAX_ACCELERATION_KMH_PER_SEC = 20.0
ACCELERATION_FLOOR_KMH = 30.0       # spikes below this are never rejected
SPEED_EMA_ALPHA = 0.4               # 40% new reading + 60% previous smoothed value
SNAP_TO_ZERO_BELOW_KMH = 2.0
MIN_TIME_GAP_SEC = 0.5
MAX_TIME_GAP_SEC = 30.0

# ----- trip detection -----
PARKING_SPEED_THRESHOLD_KMH = 8.0   # smoothed jitter settles under this
REQUIRED_MOVING_COUNT = 3           # consecutive readings to confirm start
PARKING_TIMEOUT_MS = 2 * 60 * 1000  # stationary this long ends the trip
INSTANT_START_THRESHOLD_KMH = None  # e.g. 20.0 to skip the hysteresis
TRIP_UPDATE_EVERY_POINTS = 10       # running stats pushed every N points

# ----- last known position -----
SECONDARY_POSITION_STALE_MS = 10_000  # network fixes only shown when GPS is older
