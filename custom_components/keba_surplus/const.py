"""Constants for the KEBA Surplus Charging integration."""

DOMAIN = "keba_surplus"

STORAGE_VERSION = 1
STORAGE_KEY_FMT = "keba_surplus.{entry_id}"
STORAGE_SAVE_DELAY_SECONDS = 1

# Wallbox connection
CONF_WALLBOX_HOST = "wallbox_host"

# Energy meter entities
CONF_PV_POWER_ENTITY = "pv_power_entity"
CONF_BATTERY_POWER_ENTITY = "battery_power_entity"  # W, positive = charging
CONF_HOUSE_POWER_ENTITY = "house_power_entity"  # W, includes wallbox draw
CONF_GRID_POWER_ENTITY = "grid_power_entity"  # W, positive = import
CONF_BATTERY_SOC_ENTITY = "battery_soc_entity"
CONF_INVERT_BATTERY_POWER = "invert_battery_power"

# Charging strategy configuration
CONF_MIN_START_POWER = "min_start_power_watt"
CONF_STOP_THRESHOLD = "stop_threshold_watt"
CONF_START_DELAY = "start_delay_seconds"
CONF_STOP_DELAY = "stop_delay_seconds"
CONF_PHYSICAL_PHASE_SWITCH = "physical_phase_switch"
CONF_MIN_CURRENT_CHANGE = "min_current_change_ampere"
CONF_MIN_CHANGE_INTERVAL = "min_change_interval_seconds"
CONF_INPUT_X1_STRATEGY = "input_x1_strategy"

# Battery interlock (external command line tool such as e3dcset)
CONF_INTERLOCK_ENABLED = "interlock_enabled"
CONF_INTERLOCK_PREFIX = "interlock_prefix"
CONF_DISCHARGE_LOCK_ENABLE_COMMAND = "discharge_lock_enable_command"
CONF_DISCHARGE_LOCK_DISABLE_COMMAND = "discharge_lock_disable_command"
CONF_GRID_CHARGE_ENABLE_COMMAND = "grid_charge_enable_command"
CONF_GRID_CHARGE_DISABLE_COMMAND = "grid_charge_disable_command"
CONF_INTERLOCK_MIN_INTERVAL = "interlock_min_interval_seconds"

CONF_LOG_LEVEL = "log_level"

# Strategy identifiers
STRATEGY_OFF = "off"
STRATEGY_SURPLUS_BATTERY_PRIO = "surplus_battery_prio"
STRATEGY_SURPLUS_VEHICLE_PRIO = "surplus_vehicle_prio"
STRATEGY_MAX_WITH_BATTERY = "max_with_battery"
STRATEGY_MAX_WITHOUT_BATTERY = "max_without_battery"

# Default strategy configuration
DEFAULT_MIN_START_POWER = 1400  # W
DEFAULT_STOP_THRESHOLD = 1000  # W
DEFAULT_START_DELAY = 120  # seconds
DEFAULT_STOP_DELAY = 300  # seconds
DEFAULT_PHYSICAL_PHASE_SWITCH = 3
DEFAULT_MIN_CURRENT_CHANGE = 1  # A
DEFAULT_MIN_CHANGE_INTERVAL = 60  # seconds
DEFAULT_INPUT_X1_STRATEGY = STRATEGY_MAX_WITHOUT_BATTERY
DEFAULT_INTERLOCK_MIN_INTERVAL = 3  # seconds
DEFAULT_LOG_LEVEL = "info"

LOG_LEVELS = ("debug", "info", "warning", "error")
LOG_CATEGORY_WALLBOX = "wallbox"
LOG_CATEGORY_SYSTEM = "system"
MAX_LOG_ENTRIES = 1000

# Evaluation cycle
UPDATE_INTERVAL_SECONDS = 15

# Electrical limits
PHASE_VOLTAGE = 230  # V per phase
MIN_CURRENT_AMPERE = 6
MAX_CURRENT_1P_AMPERE = 32
MAX_CURRENT_3P_AMPERE = 16

# Surplus calculation
BATTERY_PRIO_SAFETY_FACTOR = 0.90  # 10% margin on battery priority surplus

# Reconciliation against device reports
CHARGING_STATE = 3
REAL_CHARGING_MIN_POWER_MW = 1000  # 1 W
ACTIVE_PHASE_MIN_CURRENT_MA = 500

# Battery protection under vehicle priority
BATTERY_DISCHARGE_THRESHOLD_W = -500
BATTERY_DISCHARGE_DURATION_SECONDS = 120
BATTERY_PROTECTION_REDUCTION_AMPERE = 2

# Wallbox UDP protocol
WALLBOX_UDP_PORT = 7090
WALLBOX_COMMAND_TIMEOUT_SECONDS = 6.0
WALLBOX_COMMAND_COOLDOWN_SECONDS = 0.1

# Interlock command execution
INTERLOCK_COMMAND_TIMEOUT_SECONDS = 30.0

WALLBOX_STATE_NAMES = {
    0: "starting",
    1: "not ready for charging",
    2: "ready for charging",
    3: "charging",
    4: "error",
    5: "authorization rejected",
}

# Services
SERVICE_SWITCH_STRATEGY = "switch_strategy"
SERVICE_SET_GRID_CHARGING = "set_grid_charging"
ATTR_STRATEGY = "strategy"
ATTR_ENABLED = "enabled"
ATTR_ENTRY_ID = "entry_id"
