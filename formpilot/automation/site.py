"""Fixed landmarks of the consular application site outside the per-step field maps."""

LOCATION_SELECT = "#ctl00_SiteContentPlaceHolder_ucLocation_ddlLocation"

CAPTCHA_IMAGE = "#c_default_ctl00_sitecontentplaceholder_uclocation_identifycaptcha1_defaultcaptcha_CaptchaImage"
CAPTCHA_INPUT = "#ctl00_SiteContentPlaceHolder_ucLocation_IdentifyCaptcha1_txtCodeTextBox"
CAPTCHA_REFRESH = "#c_default_ctl00_sitecontentplaceholder_uclocation_identifycaptcha1_defaultcaptcha_RefreshButton"
CAPTCHA_ERRORS = (
    "#ctl00_SiteContentPlaceHolder_ucLocation_IdentifyCaptcha1_ValidationSummary",
    "#ctl00_SiteContentPlaceHolder_ucLocation_IdentifyCaptcha1_csvCaptChaCodeTextBox",
)
START_BUTTON = "#ctl00_SiteContentPlaceHolder_lnkNew"

CONFIRM_PAGE_MARKER = "ConfirmApplicationID.aspx"
BARCODE = "#ctl00_SiteContentPlaceHolder_lblBarcode"
APPLICATION_DATE = "#ctl00_SiteContentPlaceHolder_lblDate"
PRIVACY_CHECKBOX = "#ctl00_SiteContentPlaceHolder_chkbxPrivacyAct"
SECURITY_ANSWER = "#ctl00_SiteContentPlaceHolder_txtAnswer"
CONTINUE_BUTTON = "#ctl00_SiteContentPlaceHolder_btnContinue"

NEXT_BUTTON = "#ctl00_SiteContentPlaceHolder_UpdateButton3"
CONFIRMATION_NUMBER = "#ctl00_SiteContentPlaceHolder_lblConfirmationNumber"

VALIDATION_SUMMARIES = (
    "#ctl00_SiteContentPlaceHolder_FormView1_ValidationSummary",
    "#ctl00_SiteContentPlaceHolder_ValidationSummary1",
    ".error-message",
    ".validation-error",
)
VALIDATION_ITEMS = tuple(f"{selector} ul li" for selector in VALIDATION_SUMMARIES) + (".field-validation-error",)
